from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

from settings.config import settings

# Third-party loggers that flood INFO/DEBUG during PDF parsing and HTTP polling
QUIET_LOGGERS = ("pdfminer", "pdfplumber", "httpx", "httpcore", "openai")


def configure_logging(level: Optional[str] = None) -> None:
	"""
	Plain-text logging for the app and its servers. Pipeline stages log through
	services.json_logger and keep their own JSON handler.
	"""
	level_name = (level or settings.LOG_LEVEL).upper()
	loggers = {
		"": {"handlers": ["console"], "level": level_name},
		"uvicorn": {"handlers": ["console"], "level": level_name, "propagate": False},
		"arq": {"handlers": ["console"], "level": level_name, "propagate": False},
	}
	for name in QUIET_LOGGERS:
		loggers[name] = {"level": logging.getLevelName(logging.WARNING)}

	dictConfig(
		{
			"version": 1,
			"disable_existing_loggers": False,
			"formatters": {
				"standard": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"}
			},
			"handlers": {
				"console": {
					"class": "logging.StreamHandler",
					"formatter": "standard",
					"level": level_name,
				}
			},
			"loggers": loggers,
		}
	)

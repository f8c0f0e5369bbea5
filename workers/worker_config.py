from __future__ import annotations

from typing import Any

from arq.connections import RedisSettings
from arq import cron

from db.postgres import close_postgres, get_session_factory
from settings.config import settings
from settings.logging_config import configure_logging
from workers.exchange_rate_worker import reconcile_exchange_rates


async def startup(ctx: dict[str, Any]) -> None:
    configure_logging()
    ctx["session_factory"] = get_session_factory()


async def shutdown(ctx: dict[str, Any]) -> None:
    await close_postgres()


class WorkerSettings:
    functions = [
        reconcile_exchange_rates,
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL or "redis://localhost:6379")
    cron_jobs = [
        cron(reconcile_exchange_rates, hour=6, minute=0),   # Daily rate warm-up + backfill at 6:00 AM UTC
    ]

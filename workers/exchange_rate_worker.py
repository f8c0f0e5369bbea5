from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from db.postgres import session_scope
from repositories.exchange_rate_repo_pg import ExchangeRateRepositoryPg
from repositories.transaction_repo_pg import TransactionRepositoryPg
from services.exchange_rates import CurrencyConverter
from services.json_logger import get_json_logger
from settings.config import settings


logger = get_json_logger("exchange_rate_worker")


async def reconcile_exchange_rates(ctx: dict[str, Any], user_id: str | None = None) -> dict:
    """
    Warm today's rates, then backfill reference-currency amounts.
    - If user_id provided: scope the backfill to that user
    - Otherwise: every user's unconverted transactions
    """
    async with session_scope(ctx.get("session_factory")) as session:
        converter = CurrencyConverter(ExchangeRateRepositoryPg(session))
        warmed = await converter.warm(settings.WARM_RATE_CURRENCIES, datetime.now(timezone.utc).date())
        result = await converter.reconcile_unconverted(
            TransactionRepositoryPg(session),
            user_id=uuid.UUID(user_id) if user_id else None,
        )
    logger.info("exchange_rate_job", extra={"extra": {"warmed": warmed, **result}})
    return {**result, "warmed": warmed}

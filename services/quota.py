from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Callable, List, Optional

from dateutil.relativedelta import relativedelta

from schemas.ingestion import QuotaMonth, QuotaStatus
from services.json_logger import get_json_logger
from settings.config import settings


def _today() -> date:
    return datetime.now(timezone.utc).date()


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def next_month_start(day: date) -> date:
    return day.replace(day=1) + relativedelta(months=1)


class QuotaService:
    """
    Per-user monthly cap on fallback extractions.

    The counter only moves through the repository's atomic increment; this
    class never reads, adds and writes back.
    """

    def __init__(self, quota_repo, monthly_limit: Optional[int] = None, today: Callable[[], date] = _today) -> None:
        self.quota_repo = quota_repo
        self.monthly_limit = monthly_limit or settings.AI_MONTHLY_LIMIT
        self.today = today
        self.logger = get_json_logger("quota")

    async def check_quota(self, user_id: uuid.UUID) -> QuotaStatus:
        day = self.today()
        record = await self.quota_repo.get_or_create(user_id, month_key(day), self.monthly_limit)
        remaining = max(0, record.monthly_limit - record.usage_count)
        return QuotaStatus(
            available=remaining > 0,
            used=record.usage_count,
            limit=record.monthly_limit,
            remaining=remaining,
            month=month_key(day),
            reset_date=next_month_start(day),
        )

    async def increment_usage(self, user_id: uuid.UUID) -> int:
        count = await self.quota_repo.increment(user_id, month_key(self.today()), self.monthly_limit)
        self.logger.info("ai_quota_incremented", extra={"extra": {"user_id": str(user_id), "usage_count": count}})
        return count

    async def usage_history(self, user_id: uuid.UUID, months: int = 6) -> List[QuotaMonth]:
        records = await self.quota_repo.history(user_id, months)
        return [QuotaMonth(month=r.month_year, used=r.usage_count, limit=r.monthly_limit) for r in records]

    async def reset_usage(self, user_id: uuid.UUID, month: Optional[str] = None) -> bool:
        return await self.quota_repo.reset(user_id, month or month_key(self.today()))

    async def update_limit(self, user_id: uuid.UUID, limit: int, month: Optional[str] = None) -> None:
        if limit <= 0:
            raise ValueError("monthly limit must be positive")
        await self.quota_repo.set_limit(user_id, month or month_key(self.today()), limit)

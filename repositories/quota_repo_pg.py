from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import AiUsageQuota


class QuotaRepositoryPg:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_or_create(self, user_id: uuid.UUID, month: str, default_limit: int) -> AiUsageQuota:
        stmt = (
            insert(AiUsageQuota)
            .values(user_id=user_id, month_year=month, usage_count=0, monthly_limit=default_limit)
            .on_conflict_do_nothing(index_elements=["user_id", "month_year"])
        )
        await self._session.execute(stmt)
        await self._session.commit()
        res = await self._session.execute(
            select(AiUsageQuota).where(and_(AiUsageQuota.user_id == user_id, AiUsageQuota.month_year == month))
        )
        return res.scalar_one()

    async def increment(self, user_id: uuid.UUID, month: str, default_limit: int) -> int:
        """Single-statement upsert; returns the post-increment count."""
        stmt = (
            insert(AiUsageQuota)
            .values(user_id=user_id, month_year=month, usage_count=1, monthly_limit=default_limit)
            .on_conflict_do_update(
                index_elements=["user_id", "month_year"],
                set_={"usage_count": AiUsageQuota.usage_count + 1, "updated_at": func.now()},
            )
            .returning(AiUsageQuota.usage_count)
        )
        res = await self._session.execute(stmt)
        count = res.scalar_one()
        await self._session.commit()
        return count

    async def history(self, user_id: uuid.UUID, months: int) -> List[AiUsageQuota]:
        res = await self._session.execute(
            select(AiUsageQuota)
            .where(AiUsageQuota.user_id == user_id)
            .order_by(desc(AiUsageQuota.month_year))
            .limit(months)
        )
        return list(res.scalars().all())

    async def reset(self, user_id: uuid.UUID, month: str) -> bool:
        res = await self._session.execute(
            update(AiUsageQuota)
            .where(and_(AiUsageQuota.user_id == user_id, AiUsageQuota.month_year == month))
            .values(usage_count=0)
        )
        await self._session.commit()
        return bool(res.rowcount)

    async def set_limit(self, user_id: uuid.UUID, month: str, limit: int) -> Optional[AiUsageQuota]:
        stmt = (
            insert(AiUsageQuota)
            .values(user_id=user_id, month_year=month, usage_count=0, monthly_limit=limit)
            .on_conflict_do_update(index_elements=["user_id", "month_year"], set_={"monthly_limit": limit, "updated_at": func.now()})
            .returning(AiUsageQuota)
        )
        res = await self._session.execute(stmt)
        record = res.scalar_one_or_none()
        await self._session.commit()
        return record

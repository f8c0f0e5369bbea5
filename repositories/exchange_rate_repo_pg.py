from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import and_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ExchangeRate


class ExchangeRateRepositoryPg:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_rate(self, rate_date: date, currency_from: str, currency_to: str) -> Optional[Tuple[Decimal, str]]:
        stmt = select(ExchangeRate.rate, ExchangeRate.source).where(
            and_(
                ExchangeRate.rate_date == rate_date,
                ExchangeRate.currency_from == currency_from,
                ExchangeRate.currency_to == currency_to,
            )
        )
        row = (await self._session.execute(stmt)).first()
        if row is None:
            return None
        return Decimal(str(row.rate)), row.source

    async def save_rate(self, rate_date: date, currency_from: str, currency_to: str, rate: Decimal, source: str) -> Tuple[Decimal, str]:
        """Insert if absent and return whatever is stored for the key."""
        stmt = (
            insert(ExchangeRate)
            .values(rate_date=rate_date, currency_from=currency_from, currency_to=currency_to, rate=rate, source=source)
            .on_conflict_do_nothing(index_elements=["rate_date", "currency_from", "currency_to"])
        )
        await self._session.execute(stmt)
        await self._session.commit()
        stored = await self.get_rate(rate_date, currency_from, currency_to)
        return stored if stored is not None else (rate, source)

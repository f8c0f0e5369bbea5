from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import Select, and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Transaction
from transactions.models import CandidateTransaction


class TransactionRepositoryPg:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    # Dedup lookups
    async def exists_by_provider_id(self, user_id: uuid.UUID, source: str, provider_transaction_id: str) -> bool:
        stmt = select(Transaction.id).where(
            and_(
                Transaction.user_id == user_id,
                Transaction.source == source,
                Transaction.provider_transaction_id == provider_transaction_id,
            )
        ).limit(1)
        res = await self._session.execute(stmt)
        return res.scalar_one_or_none() is not None

    async def exists_by_content(
        self,
        user_id: uuid.UUID,
        txn_date: date,
        description: str,
        amount: Decimal,
        source_file_hash: Optional[str],
    ) -> bool:
        conditions = [
            Transaction.user_id == user_id,
            Transaction.txn_date == txn_date,
            Transaction.description == description,
            Transaction.amount == amount,
        ]
        if source_file_hash is None:
            conditions.append(Transaction.source_file_hash.is_(None))
        else:
            conditions.append(Transaction.source_file_hash == source_file_hash)
        res = await self._session.execute(select(Transaction.id).where(and_(*conditions)).limit(1))
        return res.scalar_one_or_none() is not None

    async def add(
        self,
        user_id: uuid.UUID,
        txn: CandidateTransaction,
        source_file_hash: Optional[str] = None,
        statement_file_id: Optional[uuid.UUID] = None,
    ) -> Transaction:
        record = Transaction(
            user_id=user_id,
            txn_date=txn.date,
            txn_datetime=txn.transaction_datetime,
            description=txn.description,
            merchant=txn.merchant,
            reference=txn.reference,
            amount=txn.amount,
            transaction_type=txn.transaction_type,
            currency=txn.currency,
            category_id=txn.category_id,
            confidence_score=txn.confidence,
            source=txn.source,
            provider_transaction_id=txn.provider_transaction_id,
            provider_timestamp=txn.provider_timestamp,
            source_file_hash=source_file_hash,
            statement_file_id=statement_file_id,
            needs_review=txn.needs_review,
            processed_by_ai=txn.processed_by_ai,
            installment_number=txn.installment.number if txn.installment else None,
            installment_total=txn.installment.total if txn.installment else None,
            installment_group_id=txn.installment.group_id if txn.installment else None,
            amount_usd=txn.amount_usd,
            exchange_rate=txn.exchange_rate,
            exchange_rate_date=txn.exchange_rate_date,
            raw_data=txn.raw_data or {},
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def latest_provider_timestamp(self, user_id: uuid.UUID, source: str) -> Optional[datetime]:
        stmt = select(func.max(Transaction.provider_timestamp)).where(
            and_(Transaction.user_id == user_id, Transaction.source == source)
        )
        res = await self._session.execute(stmt)
        return res.scalar_one_or_none()

    # Reference-currency backfill
    async def list_unconverted(self, reference_currency: str, user_id: Optional[uuid.UUID] = None) -> list[Transaction]:
        stmt: Select[tuple[Transaction]] = select(Transaction).where(
            and_(
                Transaction.amount_usd.is_(None),
                Transaction.currency.is_not(None),
                Transaction.currency != reference_currency,
            )
        )
        if user_id:
            stmt = stmt.where(Transaction.user_id == user_id)
        stmt = stmt.order_by(Transaction.txn_date, Transaction.created_at)
        res = await self._session.execute(stmt)
        return list(res.scalars().all())

    async def set_conversion(self, transaction_id: uuid.UUID, amount_usd: Decimal, rate: Decimal, rate_date: date) -> None:
        await self._session.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(amount_usd=amount_usd, exchange_rate=rate, exchange_rate_date=rate_date)
        )

    # Review boundary
    async def mark_reviewed(self, user_id: uuid.UUID, transaction_ids: Iterable[uuid.UUID]) -> int:
        ids = list(transaction_ids)
        if not ids:
            return 0
        res = await self._session.execute(
            update(Transaction)
            .where(and_(Transaction.user_id == user_id, Transaction.id.in_(ids)))
            .values(needs_review=False)
        )
        await self._session.commit()
        return res.rowcount or 0

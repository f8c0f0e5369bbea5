from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Union

from services.json_logger import get_json_logger
from transactions.models import SOURCE_FILE, CandidateTransaction


@dataclass(frozen=True)
class ProviderKey:
    """Pull sources: the provider's own id is stable."""

    user_id: uuid.UUID
    source: str
    provider_transaction_id: str


@dataclass(frozen=True)
class ContentKey:
    """Documents: no stable id, so the content plus the originating file identifies a row."""

    user_id: uuid.UUID
    date: date
    description: str
    amount: Decimal
    source_file: Optional[str]


DedupKey = Union[ProviderKey, ContentKey]


def dedup_key(user_id: uuid.UUID, txn: CandidateTransaction, source_file: Optional[str] = None) -> DedupKey:
    if txn.source != SOURCE_FILE and txn.provider_transaction_id:
        return ProviderKey(user_id=user_id, source=txn.source, provider_transaction_id=txn.provider_transaction_id)
    return ContentKey(user_id=user_id, date=txn.date, description=txn.description, amount=txn.amount, source_file=source_file)


@dataclass
class SaveResult:
    inserted: int = 0
    skipped: int = 0
    failed: int = 0


class PersistenceGate:
    """
    Inserts a normalized batch in order, skipping rows that already exist.

    Each row is committed on its own so a later failure never takes earlier
    rows with it; a failed row is logged and counted, and the batch goes on.
    """

    def __init__(self, txn_repo) -> None:
        self.txn_repo = txn_repo
        self.logger = get_json_logger("persistence_gate")

    async def exists(self, key: DedupKey) -> bool:
        if isinstance(key, ProviderKey):
            return await self.txn_repo.exists_by_provider_id(key.user_id, key.source, key.provider_transaction_id)
        return await self.txn_repo.exists_by_content(key.user_id, key.date, key.description, key.amount, key.source_file)

    async def save_batch(
        self,
        user_id: uuid.UUID,
        transactions: Iterable[CandidateTransaction],
        source_file: Optional[str] = None,
        statement_file_id: Optional[uuid.UUID] = None,
    ) -> SaveResult:
        result = SaveResult()
        # Keys seen in this batch, so repeated rows inside one document are skipped too
        seen: set[DedupKey] = set()
        for index, txn in enumerate(transactions):
            key = dedup_key(user_id, txn, source_file)
            try:
                if key in seen or await self.exists(key):
                    result.skipped += 1
                    continue
                await self.txn_repo.add(user_id, txn, source_file_hash=source_file, statement_file_id=statement_file_id)
                await self.txn_repo.commit()
                seen.add(key)
                result.inserted += 1
            except Exception as exc:
                result.failed += 1
                self.logger.error(
                    "transaction_insert_failed",
                    extra={"extra": {"user_id": str(user_id), "index": index, "source": txn.source, "error": str(exc)}},
                )
                try:
                    await self.txn_repo.rollback()
                except Exception:
                    self.logger.exception("rollback_failed")
        self.logger.info(
            "batch_saved",
            extra={"extra": {"user_id": str(user_id), "inserted": result.inserted, "skipped": result.skipped, "failed": result.failed}},
        )
        return result

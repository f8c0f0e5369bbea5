from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import httpx
from dateutil.relativedelta import relativedelta

from schemas.ingestion import IngestionResponse
from services.errors import ProviderError
from services.json_logger import get_json_logger
from services.persistence_gate import PersistenceGate
from services.response_formatter import format_error, format_success
from settings.config import settings
from sync.base import SyncAdapter, SyncCredentials, parse_timestamp
from sync.enable_banking import EnableBankingAdapter
from sync.mercadopago import MercadoPagoAdapter
from sync.mercury import MercuryAdapter
from transactions.normalization import Normalizer


ADAPTERS: Dict[str, Callable[[], SyncAdapter]] = {
    MercadoPagoAdapter.name: MercadoPagoAdapter,
    MercuryAdapter.name: MercuryAdapter,
    EnableBankingAdapter.name: EnableBankingAdapter,
}

API_CONFIDENCE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncService:
    """
    Pull-based ingestion for one provider connection.

    A provider error aborts the run before persistence; a malformed record is
    skipped and counted. Persistence is per item through the same gate as documents.
    """

    def __init__(
        self,
        txn_repo,
        normalizer: Normalizer,
        gate: PersistenceGate,
        client: Optional[httpx.AsyncClient] = None,
        adapters: Optional[Dict[str, Callable[[], SyncAdapter]]] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.txn_repo = txn_repo
        self.normalizer = normalizer
        self.gate = gate
        self.client = client
        self.adapters = ADAPTERS if adapters is None else adapters
        self.now = now
        self.logger = get_json_logger("sync")

    async def resolve_since(self, user_id: uuid.UUID, provider: str, since: Optional[datetime]) -> datetime:
        if since is not None:
            return since if since.tzinfo else since.replace(tzinfo=timezone.utc)
        latest = await self.txn_repo.latest_provider_timestamp(user_id, provider)
        if latest is not None:
            if latest.tzinfo is None:
                latest = latest.replace(tzinfo=timezone.utc)
            # Skip the boundary record itself
            return latest + timedelta(seconds=1)
        return self.now() - relativedelta(months=settings.SYNC_LOOKBACK_MONTHS)

    async def sync(
        self,
        user_id: uuid.UUID,
        provider: str,
        credentials: SyncCredentials,
        since: Optional[str] = None,
    ) -> IngestionResponse:
        name = f"{provider} sync"
        try:
            factory = self.adapters.get(provider)
            if factory is None:
                raise ProviderError(provider, "unknown provider")
            adapter = factory()
            start = await self.resolve_since(user_id, provider, parse_timestamp(since))
            until = self.now()
            self.logger.info("sync_started", extra={"extra": {"user_id": str(user_id), "provider": provider, "since": start.isoformat(), "until": until.isoformat()}})

            if self.client is not None:
                result = await adapter.fetch(self.client, credentials, start, until)
            else:
                async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
                    result = await adapter.fetch(client, credentials, start, until)
            fetched = result.transactions

            # Oldest first so an aborted run leaves a usable incremental cursor
            fetched.sort(key=lambda t: (t.provider_timestamp or until))
            transactions = await self.normalizer.normalize(user_id, fetched)
            saved = await self.gate.save_batch(user_id, transactions)
            self.logger.info(
                "sync_finished",
                extra={"extra": {"user_id": str(user_id), "provider": provider, "fetched": len(fetched), "malformed": len(result.malformed), "inserted": saved.inserted, "skipped": saved.skipped, "failed": saved.failed}},
            )
            return format_success(
                file_id=None,
                name=name,
                method="api",
                confidence=API_CONFIDENCE,
                transactions=transactions,
                metadata=None,
                saved=saved,
                malformed=len(result.malformed),
            )
        except Exception as exc:
            self.logger.error("sync_failed", extra={"extra": {"user_id": str(user_id), "provider": provider, "kind": getattr(exc, "kind", exc.__class__.__name__), "error": str(exc)}})
            return format_error(exc, name=name)

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from dateutil.parser import isoparse

from services.errors import ProviderAuthError, ProviderError
from services.json_logger import get_json_logger
from settings.config import settings
from transactions.models import CandidateTransaction


logger = get_json_logger("sync")


class MalformedRecord(ValueError):
    """A provider record that cannot become a transaction."""


@dataclass
class SyncCredentials:
    """Already-valid credentials handed over by the provider connection flow."""

    access_token: str
    accounts: List[str] = field(default_factory=list)
    session_id: Optional[str] = None


@dataclass
class FetchResult:
    transactions: List[CandidateTransaction] = field(default_factory=list)
    # Provider ids of records skipped because they could not be transformed
    malformed: List[Optional[str]] = field(default_factory=list)

    def add(self, provider: str, record: Any, transform: Callable[[Any], CandidateTransaction], id_key: str = "id") -> None:
        """Transform one record; a bad record is logged and counted, the rest of the run goes on."""
        try:
            self.transactions.append(transform(record))
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            record_id = record.get(id_key) if isinstance(record, dict) else None
            self.malformed.append(str(record_id) if record_id is not None else None)
            logger.warning(
                "sync_record_skipped",
                extra={"extra": {"provider": provider, "provider_transaction_id": record_id, "error": str(exc)}},
            )


class SyncAdapter(Protocol):
    name: str

    async def fetch(
        self,
        client: httpx.AsyncClient,
        credentials: SyncCredentials,
        since: datetime,
        until: datetime,
    ) -> FetchResult:
        ...


async def get_json(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    headers: Dict[str, str],
    params: Optional[Dict[str, Any]] = None,
) -> Any:
    """GET and decode; 401/403 mean the user must reconnect, anything else non-2xx aborts the run."""
    try:
        resp = await client.get(url, headers=headers, params=params, timeout=settings.HTTP_TIMEOUT_SECONDS)
    except httpx.HTTPError as exc:
        raise ProviderError(provider, f"request failed: {exc}") from exc
    if resp.status_code in (401, 403):
        raise ProviderAuthError(provider, resp.status_code)
    if resp.status_code >= 400:
        raise ProviderError(provider, f"HTTP {resp.status_code} from {url}", resp.status_code)
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderError(provider, f"invalid JSON from {url}") from exc


async def page_delay() -> None:
    if settings.SYNC_PAGE_DELAY_SECONDS > 0:
        await asyncio.sleep(settings.SYNC_PAGE_DELAY_SECONDS)


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Accept": "application/json"}


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = isoparse(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid amount {value!r}") from exc


def day(value: datetime) -> str:
    return value.date().isoformat()

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple

import httpx

from services.errors import RateLookupError
from services.json_logger import get_json_logger
from settings.config import settings
from transactions.models import CandidateTransaction


CENT = Decimal("0.01")

# (client, source_currency, target_currency, on_date) -> (units of source per one target, label)
RateSource = Callable[[httpx.AsyncClient, str, str, date], Awaitable[Tuple[Decimal, str]]]


@dataclass(frozen=True)
class Conversion:
    amount: Optional[Decimal]
    rate: Optional[Decimal]
    rate_date: Optional[date]
    source: Optional[str] = None

    @property
    def converted(self) -> bool:
        return self.amount is not None


NO_CONVERSION = Conversion(amount=None, rate=None, rate_date=None)


def _positive_decimal(value: object, what: str) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise RateLookupError(f"{what}: invalid rate {value!r}") from exc
    if not rate.is_finite() or rate <= 0:
        raise RateLookupError(f"{what}: invalid rate {value!r}")
    return rate


async def dolarapi_rate(client: httpx.AsyncClient, currency: str, target: str, on_date: date) -> Tuple[Decimal, str]:
    """Official ARS/USD sell rate. DolarAPI only serves today's quote, which is used for any date."""
    if currency != "ARS" or target != "USD":
        raise RateLookupError(f"dolarapi does not quote {currency}/{target}")
    try:
        resp = await client.get(settings.DOLARAPI_URL, headers={"Accept": "application/json"}, timeout=settings.RATE_TIMEOUT_SECONDS)
        resp.raise_for_status()
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise RateLookupError(f"dolarapi request failed: {exc}") from exc
    if not isinstance(payload, dict) or not payload.get("venta"):
        raise RateLookupError("Invalid response from DolarAPI")
    return _positive_decimal(payload["venta"], "dolarapi"), "dolarapi.com"


async def frankfurter_rate(client: httpx.AsyncClient, currency: str, target: str, on_date: date) -> Tuple[Decimal, str]:
    """ECB reference rates for the given date (or the last business day before it)."""
    url = f"{settings.FRANKFURTER_URL.rstrip('/')}/{on_date.isoformat()}"
    try:
        resp = await client.get(url, params={"from": target, "to": currency}, timeout=settings.RATE_TIMEOUT_SECONDS)
        resp.raise_for_status()
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise RateLookupError(f"frankfurter request failed: {exc}") from exc
    rates = payload.get("rates") if isinstance(payload, dict) else None
    if not rates or currency not in rates:
        raise RateLookupError(f"frankfurter has no {currency}/{target} rate for {on_date}")
    return _positive_decimal(rates[currency], "frankfurter"), "frankfurter.app"


RATE_SOURCES: Dict[str, RateSource] = {
    "ARS": dolarapi_rate,
}
DEFAULT_RATE_SOURCE: RateSource = frankfurter_rate


class CurrencyConverter:
    """
    Best-effort conversion into the reference currency.

    Rates are cached per (date, currency, target); the first stored value for a
    key is authoritative. convert() never raises: failures come back as
    NO_CONVERSION and the reconciliation job retries later.
    """

    def __init__(
        self,
        rate_repo,
        client: Optional[httpx.AsyncClient] = None,
        sources: Optional[Dict[str, RateSource]] = None,
        reference_currency: Optional[str] = None,
    ) -> None:
        self.rate_repo = rate_repo
        self.client = client
        self.sources = RATE_SOURCES if sources is None else sources
        self.reference_currency = (reference_currency or settings.REFERENCE_CURRENCY).upper()
        self.logger = get_json_logger("currency_converter")

    async def _fetch(self, currency: str, target: str, on_date: date) -> Tuple[Decimal, str]:
        source = self.sources.get(currency, DEFAULT_RATE_SOURCE)
        if self.client is not None:
            return await source(self.client, currency, target, on_date)
        async with httpx.AsyncClient(timeout=settings.RATE_TIMEOUT_SECONDS) as client:
            return await source(client, currency, target, on_date)

    async def get_rate(self, currency: str, on_date: date, target: Optional[str] = None) -> Tuple[Decimal, str]:
        """Cached rate lookup; raises RateLookupError."""
        currency = currency.upper()
        target = (target or self.reference_currency).upper()
        if currency == target:
            return Decimal("1"), "identity"
        try:
            cached = await self.rate_repo.get_rate(on_date, currency, target)
        except Exception as exc:
            raise RateLookupError(f"rate cache read failed: {exc}") from exc
        if cached is not None:
            return cached

        rate, label = await self._fetch(currency, target, on_date)
        try:
            # Insert-if-absent; a concurrent writer's value wins and is returned
            stored = await self.rate_repo.save_rate(on_date, currency, target, rate, label)
        except Exception as exc:
            self.logger.warning("rate_cache_write_failed", extra={"extra": {"currency": currency, "date": on_date.isoformat(), "error": str(exc)}})
            stored = (rate, label)
        return stored

    async def convert(self, amount: Decimal, currency: Optional[str], on_date: date, target: Optional[str] = None) -> Conversion:
        target = (target or self.reference_currency).upper()
        if not currency:
            return NO_CONVERSION
        currency = currency.upper()
        if currency == target:
            return Conversion(amount=Decimal(amount).quantize(CENT, ROUND_HALF_UP), rate=Decimal("1"), rate_date=on_date, source="identity")
        try:
            rate, label = await self.get_rate(currency, on_date, target)
            converted = (Decimal(amount) / rate).quantize(CENT, ROUND_HALF_UP)
        except Exception as exc:
            self.logger.warning(
                "conversion_failed",
                extra={"extra": {"currency": currency, "target": target, "date": on_date.isoformat(), "error": str(exc)}},
            )
            return NO_CONVERSION
        return Conversion(amount=converted, rate=rate, rate_date=on_date, source=label)

    async def convert_batch(self, transactions: Iterable[CandidateTransaction]) -> int:
        """Fill reference-currency fields in place; returns how many converted."""
        converted = 0
        for txn in transactions:
            result = await self.convert(txn.amount, txn.currency, txn.date)
            txn.amount_usd, txn.exchange_rate, txn.exchange_rate_date = result.amount, result.rate, result.rate_date
            if result.converted:
                converted += 1
        return converted

    async def warm(self, currencies: Iterable[str], on_date: date) -> Dict[str, bool]:
        out: Dict[str, bool] = {}
        for currency in currencies:
            try:
                await self.get_rate(currency, on_date)
                out[currency] = True
            except Exception as exc:
                self.logger.warning("rate_warm_failed", extra={"extra": {"currency": currency, "error": str(exc)}})
                out[currency] = False
        return out

    async def reconcile_unconverted(
        self,
        txn_repo,
        user_id: Optional[uuid.UUID] = None,
        batch_size: Optional[int] = None,
        pause_seconds: Optional[float] = None,
    ) -> Dict[str, int]:
        """
        Retry conversion for persisted transactions still missing a reference amount.

        Only the reference-currency columns are written.
        """
        batch_size = batch_size or settings.RECONCILE_BATCH_SIZE
        pause = settings.RECONCILE_BATCH_PAUSE_SECONDS if pause_seconds is None else pause_seconds
        pending = await txn_repo.list_unconverted(self.reference_currency, user_id=user_id)
        processed = 0
        failed = 0
        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            for row in batch:
                result = await self.convert(Decimal(row.amount), row.currency, row.txn_date)
                if not result.converted:
                    failed += 1
                    continue
                await txn_repo.set_conversion(row.id, result.amount, result.rate, result.rate_date)
                processed += 1
            await txn_repo.commit()
            if start + batch_size < len(pending) and pause > 0:
                await asyncio.sleep(pause)
        self.logger.info("reconcile_unconverted", extra={"extra": {"user_id": str(user_id) if user_id else None, "pending": len(pending), "processed": processed, "failed": failed}})
        return {"processed": processed, "failed": failed}

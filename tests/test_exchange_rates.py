from datetime import date
from decimal import Decimal

import httpx
import pytest

from services.errors import RateLookupError
from services.exchange_rates import (
    NO_CONVERSION,
    CurrencyConverter,
    dolarapi_rate,
    frankfurter_rate,
)
from transactions.models import CandidateTransaction

from conftest import FakeTransactionRepo


DAY = date(2024, 3, 1)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_same_currency_is_identity(rate_repo):
    conv = CurrencyConverter(rate_repo, sources={})
    result = await conv.convert(Decimal("12.345"), "usd", DAY)
    assert result.amount == Decimal("12.35")
    assert result.rate == Decimal("1")
    assert rate_repo.rates == {}


@pytest.mark.asyncio
async def test_ars_amount_divided_by_rate(converter, rate_repo):
    result = await converter.convert(Decimal("1332.00"), "ARS", DAY)
    assert result.amount == Decimal("1.33")
    assert result.rate == Decimal("1000")
    assert result.rate_date == DAY
    assert rate_repo.rates[(DAY, "ARS", "USD")] == (Decimal("1000"), "test")


@pytest.mark.asyncio
async def test_cached_rate_is_used_without_fetching(rate_repo):
    calls = []

    async def counting(client, currency, target, on_date):
        calls.append(currency)
        return Decimal("900"), "counting"

    rate_repo.rates[(DAY, "ARS", "USD")] = (Decimal("1000"), "earlier")
    conv = CurrencyConverter(rate_repo, sources={"ARS": counting})
    rate, label = await conv.get_rate("ARS", DAY)
    assert (rate, label) == (Decimal("1000"), "earlier")
    assert calls == []


@pytest.mark.asyncio
async def test_first_stored_rate_wins(rate_repo):
    async def later(client, currency, target, on_date):
        # Another writer stores its value while this fetch is in flight
        rate_repo.rates[(on_date, currency, target)] = (Decimal("1000"), "first")
        return Decimal("1200"), "second"

    conv = CurrencyConverter(rate_repo, sources={"ARS": later})
    rate, label = await conv.get_rate("ARS", DAY)
    assert (rate, label) == (Decimal("1000"), "first")


@pytest.mark.asyncio
async def test_failed_lookup_never_raises(converter):
    txn = CandidateTransaction(date=DAY, description="Hotel", amount=Decimal("80.00"), transaction_type="expense", currency="EUR")
    converted = await converter.convert_batch([txn])
    assert converted == 0
    assert txn.amount_usd is None
    assert txn.exchange_rate is None
    assert txn.amount == Decimal("80.00")
    assert txn.currency == "EUR"


@pytest.mark.asyncio
async def test_cache_read_failure_is_no_conversion(rate_repo):
    rate_repo.fail_reads = True
    conv = CurrencyConverter(rate_repo)
    assert await conv.convert(Decimal("10"), "ARS", DAY) == NO_CONVERSION
    with pytest.raises(RateLookupError):
        await conv.get_rate("ARS", DAY)


@pytest.mark.asyncio
async def test_dolarapi_uses_sell_rate():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"compra": 850.5, "venta": 890.5, "casa": "oficial"})

    async with _client(handler) as client:
        rate, label = await dolarapi_rate(client, "ARS", "USD", DAY)
    assert rate == Decimal("890.5")
    assert label == "dolarapi.com"


@pytest.mark.asyncio
async def test_dolarapi_rejects_bad_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"compra": 850.5})

    async with _client(handler) as client:
        with pytest.raises(RateLookupError):
            await dolarapi_rate(client, "ARS", "USD", DAY)
    with pytest.raises(RateLookupError):
        await dolarapi_rate(None, "EUR", "USD", DAY)


@pytest.mark.asyncio
async def test_frankfurter_queries_by_date():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"amount": 1.0, "base": "USD", "date": "2024-03-01", "rates": {"EUR": 0.92}})

    async with _client(handler) as client:
        rate, _ = await frankfurter_rate(client, "EUR", "USD", DAY)
    assert rate == Decimal("0.92")
    assert seen["path"].endswith("/2024-03-01")
    assert seen["params"] == {"from": "USD", "to": "EUR"}


@pytest.mark.asyncio
async def test_frankfurter_http_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={})

    async with _client(handler) as client:
        with pytest.raises(RateLookupError):
            await frankfurter_rate(client, "EUR", "USD", DAY)


@pytest.mark.asyncio
async def test_reconcile_fills_only_convertible_rows(converter, user_id):
    repo = FakeTransactionRepo()
    for desc, currency in (("a", "ARS"), ("b", "ARS"), ("c", "EUR"), ("d", "USD")):
        txn = CandidateTransaction(date=DAY, description=desc, amount=Decimal("2000.00"), transaction_type="expense", currency=currency)
        await repo.add(user_id, txn)
    await repo.commit()

    result = await converter.reconcile_unconverted(repo, user_id=user_id, batch_size=2, pause_seconds=0)

    assert result == {"processed": 2, "failed": 1}
    by_desc = {r.description: r for r in repo.rows}
    assert by_desc["a"].amount_usd == Decimal("2.00")
    assert by_desc["b"].exchange_rate == Decimal("1000")
    assert by_desc["c"].amount_usd is None
    assert by_desc["c"].amount == Decimal("2000.00")


@pytest.mark.asyncio
async def test_warm_reports_per_currency(converter):
    warmed = await converter.warm(["ARS", "EUR"], DAY)
    assert warmed == {"ARS": True, "EUR": False}

from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal

import pytest

from services.exchange_rates import CurrencyConverter
from transactions.models import CandidateTransaction
from workers import exchange_rate_worker

from conftest import fixed_ars_rate


@asynccontextmanager
async def _session():
    yield object()


@pytest.mark.asyncio
async def test_job_warms_and_backfills(monkeypatch, rate_repo, txn_repo, user_id):
    txn = CandidateTransaction(date=date(2024, 3, 1), description="kiosco", amount=Decimal("500.00"), transaction_type="expense", currency="ARS")
    await txn_repo.add(user_id, txn)
    await txn_repo.commit()

    monkeypatch.setattr(exchange_rate_worker, "ExchangeRateRepositoryPg", lambda session: rate_repo)
    monkeypatch.setattr(exchange_rate_worker, "TransactionRepositoryPg", lambda session: txn_repo)
    monkeypatch.setattr(exchange_rate_worker, "CurrencyConverter", lambda repo: CurrencyConverter(repo, sources={"ARS": fixed_ars_rate}))
    monkeypatch.setattr(exchange_rate_worker.settings, "RECONCILE_BATCH_PAUSE_SECONDS", 0)

    result = await exchange_rate_worker.reconcile_exchange_rates({"session_factory": _session}, user_id=str(user_id))

    assert result["processed"] == 1
    assert result["failed"] == 0
    assert result["warmed"] == {"ARS": True}
    assert txn_repo.rows[0].amount_usd == Decimal("0.50")

import os
import sys

# Deterministic settings for tests
os.environ.setdefault("SYNC_PAGE_DELAY_SECONDS", "0")
os.environ.setdefault("RECONCILE_BATCH_PAUSE_SECONDS", "0")
os.environ.setdefault("DEFAULT_CURRENCY", "ARS")
os.environ.setdefault("REFERENCE_CURRENCY", "USD")


def pytest_sessionstart(session):
    # Ensure project root is on sys.path so top-level packages resolve
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


# --- Test utilities: in-memory repositories ---
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from ai_services.categorization import CategorizationService, CategoryRule
from services.exchange_rates import CurrencyConverter
from services.persistence_gate import PersistenceGate
from services.quota import QuotaService
from transactions.models import CandidateTransaction, ExtractionResult
from transactions.normalization import Normalizer


class FakeTransactionRepo:
    def __init__(self) -> None:
        self.rows: List[SimpleNamespace] = []
        self._pending: List[SimpleNamespace] = []
        self.fail_on: set[str] = set()
        self.commits = 0

    async def exists_by_provider_id(self, user_id, source, provider_transaction_id) -> bool:
        return any(
            r.user_id == user_id and r.source == source and r.provider_transaction_id == provider_transaction_id
            for r in self.rows
        )

    async def exists_by_content(self, user_id, txn_date, description, amount, source_file_hash) -> bool:
        return any(
            r.user_id == user_id
            and r.txn_date == txn_date
            and r.description == description
            and Decimal(r.amount) == Decimal(amount)
            and r.source_file_hash == source_file_hash
            for r in self.rows
        )

    async def add(self, user_id, txn: CandidateTransaction, source_file_hash=None, statement_file_id=None):
        if txn.description in self.fail_on:
            raise RuntimeError("transient store error")
        row = SimpleNamespace(
            id=uuid.uuid4(),
            user_id=user_id,
            txn_date=txn.date,
            description=txn.description,
            amount=txn.amount,
            currency=txn.currency,
            transaction_type=txn.transaction_type,
            source=txn.source,
            provider_transaction_id=txn.provider_transaction_id,
            provider_timestamp=txn.provider_timestamp,
            source_file_hash=source_file_hash,
            statement_file_id=statement_file_id,
            category_id=txn.category_id,
            needs_review=txn.needs_review,
            installment=txn.installment,
            amount_usd=txn.amount_usd,
            exchange_rate=txn.exchange_rate,
            exchange_rate_date=txn.exchange_rate_date,
        )
        self._pending.append(row)
        return row

    async def commit(self) -> None:
        self.rows.extend(self._pending)
        self._pending = []
        self.commits += 1

    async def rollback(self) -> None:
        self._pending = []

    async def latest_provider_timestamp(self, user_id, source) -> Optional[datetime]:
        stamps = [r.provider_timestamp for r in self.rows if r.user_id == user_id and r.source == source and r.provider_timestamp]
        return max(stamps) if stamps else None

    async def list_unconverted(self, reference_currency, user_id=None):
        return [
            r for r in self.rows
            if r.amount_usd is None and r.currency and r.currency != reference_currency and (user_id is None or r.user_id == user_id)
        ]

    async def set_conversion(self, transaction_id, amount_usd, rate, rate_date) -> None:
        for r in self.rows:
            if r.id == transaction_id:
                r.amount_usd, r.exchange_rate, r.exchange_rate_date = amount_usd, rate, rate_date

    async def mark_reviewed(self, user_id, transaction_ids) -> int:
        ids = set(transaction_ids)
        updated = 0
        for r in self.rows:
            if r.user_id == user_id and r.id in ids:
                r.needs_review = False
                updated += 1
        return updated


class FakeRateRepo:
    def __init__(self) -> None:
        self.rates: Dict[Tuple[date, str, str], Tuple[Decimal, str]] = {}
        self.fail_reads = False

    async def get_rate(self, rate_date, currency_from, currency_to):
        if self.fail_reads:
            raise RuntimeError("cache unavailable")
        return self.rates.get((rate_date, currency_from, currency_to))

    async def save_rate(self, rate_date, currency_from, currency_to, rate, source):
        return self.rates.setdefault((rate_date, currency_from, currency_to), (rate, source))


class FakeQuotaRepo:
    def __init__(self) -> None:
        self.records: Dict[Tuple[uuid.UUID, str], SimpleNamespace] = {}
        self.fail = False

    def _record(self, user_id, month, limit) -> SimpleNamespace:
        return self.records.setdefault(
            (user_id, month), SimpleNamespace(user_id=user_id, month_year=month, usage_count=0, monthly_limit=limit)
        )

    async def get_or_create(self, user_id, month, default_limit):
        if self.fail:
            raise RuntimeError("quota store down")
        await asyncio.sleep(0)
        return self._record(user_id, month, default_limit)

    async def increment(self, user_id, month, default_limit) -> int:
        # Yield first so concurrent callers interleave, then update in one step like the SQL upsert
        await asyncio.sleep(0)
        record = self._record(user_id, month, default_limit)
        record.usage_count += 1
        return record.usage_count

    async def history(self, user_id, months):
        mine = [r for (uid, _), r in self.records.items() if uid == user_id]
        return sorted(mine, key=lambda r: r.month_year, reverse=True)[:months]

    async def reset(self, user_id, month) -> bool:
        record = self.records.get((user_id, month))
        if record is None:
            return False
        record.usage_count = 0
        return True

    async def set_limit(self, user_id, month, limit):
        record = self._record(user_id, month, limit)
        record.monthly_limit = limit
        return record


class FakeCategoryRepo:
    def __init__(self, rules: Optional[List[CategoryRule]] = None, categories: Optional[List[Dict[str, str]]] = None) -> None:
        self.rules = rules or []
        self.categories = categories or []
        self.fail = False

    async def list_rules(self, user_id):
        if self.fail:
            raise RuntimeError("rules unavailable")
        return list(self.rules)

    async def list_categories(self, user_id):
        return list(self.categories)


class FakeFileRepo:
    def __init__(self) -> None:
        self.files: Dict[uuid.UUID, dict] = {}

    async def create(self, user_id, filename, content_hash, mime_type):
        file_id = uuid.uuid4()
        self.files[file_id] = {"user_id": user_id, "filename": filename, "content_hash": content_hash, "status": "processing"}
        return file_id

    async def finish(self, file_id, **fields):
        self.files[file_id].update(fields)


@dataclass
class StubPatternExtractor:
    result: ExtractionResult
    calls: int = 0

    def extract(self, text, institution=None, currency=None):
        self.calls += 1
        return self.result


@dataclass
class StubLlmExtractor:
    result: Optional[ExtractionResult] = None
    error: Optional[Exception] = None
    available: bool = True
    calls: int = 0
    seen_categories: list = field(default_factory=list)

    async def extract(self, text, filename=None, categories=(), currency=None):
        self.calls += 1
        self.seen_categories = list(categories)
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result


async def fixed_ars_rate(client, currency, target, on_date):
    return Decimal("1000"), "test"


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("11111111-1111-1111-1111-111111111111")


@pytest.fixture
def txn_repo() -> FakeTransactionRepo:
    return FakeTransactionRepo()


@pytest.fixture
def rate_repo() -> FakeRateRepo:
    return FakeRateRepo()


@pytest.fixture
def quota_repo() -> FakeQuotaRepo:
    return FakeQuotaRepo()


@pytest.fixture
def category_repo() -> FakeCategoryRepo:
    return FakeCategoryRepo()


@pytest.fixture
def quota_service(quota_repo) -> QuotaService:
    return QuotaService(quota_repo, monthly_limit=20, today=lambda: date(2024, 3, 15))


@pytest_asyncio.fixture
async def converter(rate_repo):
    async def _no_network(client, currency, target, on_date):
        raise RuntimeError("no network in tests")

    conv = CurrencyConverter(rate_repo, sources={"ARS": fixed_ars_rate, "EUR": _no_network, "BRL": _no_network})
    yield conv


@pytest.fixture
def normalizer(category_repo, converter) -> Normalizer:
    return Normalizer(CategorizationService(category_repo), converter)


@pytest.fixture
def gate(txn_repo) -> PersistenceGate:
    return PersistenceGate(txn_repo)

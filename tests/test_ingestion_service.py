import asyncio
from datetime import date
from decimal import Decimal

import pytest

from extraction.pattern_extractor import PatternExtractor
from services.errors import FallbackServiceError
from services.quota import QuotaService
from transactions.models import CandidateTransaction, ExtractionResult
from upload_service.ingestion_service import (
    IngestionOrchestrator,
    IngestionService,
    IngestionState,
    merge_hybrid,
)

from conftest import FakeFileRepo, StubLlmExtractor, StubPatternExtractor


HIPOTECARIO_CSV = (
    "FECHA,DESCRIPCION,SUCURSAL,REFERENCIA,DEBITO EN $,CREDITO EN $,SALDO EN $\n"
    '02/01/2024,COMPRA SUPERMERCADO DIA,Central,1001,"1.500,00",,"98.500,00"\n'
    '05/01/2024,TRANSFERENCIA RECIBIDA,Central,1002,,"20.000,00","118.500,00"\n'
    '10/01/2024,NETFLIX CUOTA 1/3,Central,1003,"2.000,00",,"116.500,00"\n'
).encode("utf-8")


def _txn(day: int, description: str, amount: str, confidence: int = 0) -> CandidateTransaction:
    return CandidateTransaction(
        date=date(2024, 1, day),
        description=description,
        amount=Decimal(amount),
        transaction_type="expense",
        currency="ARS",
        confidence=confidence,
    )


def _template(confidence: int, rows=None) -> ExtractionResult:
    rows = [_txn(2, "COMPRA", "100.00", confidence), _txn(3, "OTRA", "50.00", confidence)] if rows is None else rows
    return ExtractionResult(transactions=rows, confidence=confidence, template="GENERIC_TEXT")


def _ai_result() -> ExtractionResult:
    rows = [_txn(2, "Compra", "100.00", 95), _txn(4, "Nueva", "70.00", 95)]
    for row in rows:
        row.processed_by_ai = True
    return ExtractionResult(transactions=rows, confidence=95, template="LLM")


def _orchestrator(template, llm, quota_service):
    return IngestionOrchestrator(StubPatternExtractor(template), llm, quota_service, threshold=60)


class _SlowLlm(StubLlmExtractor):
    async def extract(self, text, filename=None, categories=(), currency=None):
        # Hand control back between the quota check and the increment
        await asyncio.sleep(0)
        return await super().extract(text, filename=filename, categories=categories, currency=currency)


@pytest.mark.asyncio
async def test_high_confidence_never_calls_fallback(quota_service, quota_repo, user_id):
    llm = StubLlmExtractor(result=_ai_result())
    run = await _orchestrator(_template(75), llm, quota_service).run(user_id, "text")

    assert run.method == "template"
    assert llm.calls == 0
    assert quota_repo.records == {}
    assert not any(t.needs_review for t in run.final.transactions)
    assert run.trace == [
        IngestionState.PARSED,
        IngestionState.TEMPLATE_MATCHED,
        IngestionState.ACCEPTED,
        IngestionState.FINALIZED,
    ]


@pytest.mark.asyncio
async def test_threshold_is_inclusive(quota_service, user_id):
    llm = StubLlmExtractor(result=_ai_result())
    run = await _orchestrator(_template(60), llm, quota_service).run(user_id, "text")
    assert run.method == "template"
    assert llm.calls == 0


@pytest.mark.asyncio
async def test_low_confidence_with_quota_merges_hybrid(quota_service, user_id):
    llm = StubLlmExtractor(result=_ai_result())
    run = await _orchestrator(_template(40), llm, quota_service).run(user_id, "text")

    assert llm.calls == 1
    assert (await quota_service.check_quota(user_id)).used == 1
    assert run.method == "hybrid"
    # AI rows plus the template row the AI did not report
    assert sorted(t.description for t in run.final.transactions) == ["Compra", "Nueva", "OTRA"]
    assert all(t.needs_review for t in run.final.transactions)
    assert IngestionState.AI_EXTRACTED in run.trace


@pytest.mark.asyncio
async def test_empty_template_result_uses_ai_only(quota_service, user_id):
    llm = StubLlmExtractor(result=_ai_result())
    run = await _orchestrator(_template(0, rows=[]), llm, quota_service).run(user_id, "text")
    assert run.method == "ai"
    assert len(run.final.transactions) == 2
    assert all(t.processed_by_ai for t in run.final.transactions)


@pytest.mark.asyncio
async def test_quota_exhausted_keeps_template_for_review(quota_repo, user_id):
    quota = QuotaService(quota_repo, monthly_limit=1, today=lambda: date(2024, 3, 1))
    await quota.increment_usage(user_id)
    llm = StubLlmExtractor(result=_ai_result())

    run = await _orchestrator(_template(40), llm, quota).run(user_id, "text")

    assert llm.calls == 0
    assert run.quota_exhausted is True
    assert run.method == "template"
    assert all(t.needs_review for t in run.final.transactions)
    assert (await quota.check_quota(user_id)).used == 1


@pytest.mark.asyncio
async def test_fallback_failure_keeps_template_and_quota(quota_service, user_id):
    llm = StubLlmExtractor(error=FallbackServiceError("model returned garbage"))
    run = await _orchestrator(_template(40), llm, quota_service).run(user_id, "text")

    assert llm.calls == 1
    assert run.method == "template"
    assert run.fallback_error == "model returned garbage"
    assert IngestionState.AI_FAILED in run.trace
    assert all(t.needs_review for t in run.final.transactions)
    assert (await quota_service.check_quota(user_id)).used == 0


@pytest.mark.asyncio
async def test_unconfigured_fallback_keeps_template(quota_service, user_id):
    llm = StubLlmExtractor(available=False)
    run = await _orchestrator(_template(40), llm, quota_service).run(user_id, "text")
    assert llm.calls == 0
    assert run.method == "template"
    assert all(t.needs_review for t in run.final.transactions)


@pytest.mark.asyncio
async def test_quota_store_failure_counts_as_unavailable(quota_service, quota_repo, user_id):
    quota_repo.fail = True
    llm = StubLlmExtractor(result=_ai_result())
    run = await _orchestrator(_template(40), llm, quota_service).run(user_id, "text")
    assert llm.calls == 0
    assert run.method == "template"


@pytest.mark.asyncio
async def test_categories_are_offered_to_fallback(quota_service, category_repo, user_id):
    category_repo.categories = [{"id": "c1", "name": "Food"}]
    llm = StubLlmExtractor(result=_ai_result())
    orchestrator = IngestionOrchestrator(StubPatternExtractor(_template(10)), llm, quota_service, category_repo=category_repo, threshold=60)
    await orchestrator.run(user_id, "text")
    assert llm.seen_categories == [{"id": "c1", "name": "Food"}]


def test_merge_hybrid_matches_duplicates_by_count():
    ai = ExtractionResult(transactions=[_txn(2, "a", "10.00")], confidence=95)
    template = ExtractionResult(transactions=[_txn(2, "A", "10.00"), _txn(2, "A again", "10.00")], confidence=30)
    merged = merge_hybrid(ai, template)
    assert [t.description for t in merged.transactions] == ["a", "A again"]
    assert merged.transactions[1].needs_review is True


def _service(quota_service, normalizer, gate, llm=None, file_repo=None):
    orchestrator = IngestionOrchestrator(PatternExtractor(), llm or StubLlmExtractor(available=False), quota_service, threshold=60)
    return IngestionService(orchestrator, normalizer, gate, file_repo=file_repo)


@pytest.mark.asyncio
async def test_document_end_to_end(quota_service, normalizer, gate, txn_repo, user_id):
    files = FakeFileRepo()
    llm = StubLlmExtractor(result=_ai_result())
    service = _service(quota_service, normalizer, gate, llm=llm, file_repo=files)

    response = await service.ingest_document(user_id, HIPOTECARIO_CSV, "text/csv", "enero.csv")

    assert response.success is True
    assert response.file.processing_method == "template"
    assert response.file.confidence_score >= 60
    assert llm.calls == 0
    assert response.metadata.inserted_count == 3
    assert response.extraction.summary.total_transactions == 3
    assert response.extraction.summary.total_income == 20000.0
    assert response.extraction.summary.total_expenses == 3500.0
    assert response.extraction.summary.net_balance == 16500.0
    netflix = next(t for t in response.extraction.transactions if t.merchant == "NETFLIX")
    assert (netflix.installment.number, netflix.installment.total) == (1, 3)
    assert netflix.amount_usd == 2.0
    stored = files.files[next(iter(files.files))]
    assert stored["status"] == "completed"
    assert stored["inserted_count"] == 3
    assert len(txn_repo.rows) == 3
    assert all(r.source_file_hash == stored["content_hash"] for r in txn_repo.rows)


@pytest.mark.asyncio
async def test_resubmitted_document_reports_duplicates(quota_service, normalizer, gate, txn_repo, user_id):
    files = FakeFileRepo()
    service = _service(quota_service, normalizer, gate, file_repo=files)
    await service.ingest_document(user_id, HIPOTECARIO_CSV, "text/csv", "enero.csv")
    again = await service.ingest_document(user_id, HIPOTECARIO_CSV, "text/csv", "enero (1).csv")

    assert again.success is True
    assert again.metadata.inserted_count == 0
    assert again.metadata.duplicate_count == 3
    assert len(txn_repo.rows) == 3
    assert [f["skipped_count"] for f in files.files.values()] == [0, 3]


@pytest.mark.asyncio
async def test_unsupported_format_returns_error_envelope(quota_service, normalizer, gate, user_id):
    files = FakeFileRepo()
    service = _service(quota_service, normalizer, gate, file_repo=files)

    response = await service.ingest_document(user_id, b"\x89PNG", "image/png", "scan.png")

    assert response.success is False
    assert response.error.kind == "unsupported_format"
    assert response.extraction.transactions == []
    assert response.extraction.summary.total_transactions == 0
    assert files.files[next(iter(files.files))]["status"] == "failed"


@pytest.mark.asyncio
async def test_unreadable_pdf_returns_error_envelope(quota_service, normalizer, gate, user_id):
    response = await _service(quota_service, normalizer, gate).ingest_document(user_id, b"%PDF-broken", "application/pdf", "x.pdf")
    assert response.success is False
    assert response.error.kind == "unreadable_document"


@pytest.mark.asyncio
async def test_concurrent_fallbacks_are_all_counted(quota_repo, user_id):
    limit, concurrent = 3, 6
    quota = QuotaService(quota_repo, monthly_limit=limit, today=lambda: date(2024, 3, 15))
    llm = _SlowLlm(result=_ai_result())
    orchestrator = _orchestrator(_template(20, rows=[]), llm, quota)

    runs = await asyncio.gather(*(orchestrator.run(user_id, f"doc {i}") for i in range(concurrent)))

    used = (await quota.check_quota(user_id)).used
    fallbacks = [r for r in runs if r.method in ("ai", "hybrid")]
    assert used == len(fallbacks) == llm.calls
    # Runs admitted before the limit was reached may finish past it, never more
    assert used <= limit + concurrent

    late = await orchestrator.run(user_id, "one more")
    assert late.quota_exhausted is True
    assert llm.calls == len(fallbacks)

from __future__ import annotations

import hashlib
import uuid
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ai_services.llm_extraction import LlmExtractor
from extraction.pattern_extractor import PatternExtractor
from extraction.text_extractor import extract_text
from schemas.ingestion import IngestionResponse
from services.errors import FallbackServiceError
from services.json_logger import get_json_logger
from services.persistence_gate import PersistenceGate
from services.quota import QuotaService
from services.response_formatter import format_error, format_success
from settings.config import settings
from transactions.models import ExtractionResult
from transactions.normalization import Normalizer


class IngestionState(str, Enum):
    PARSED = "PARSED"
    TEMPLATE_MATCHED = "TEMPLATE_MATCHED"
    ACCEPTED = "ACCEPTED"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    QUOTA_CHECK = "QUOTA_CHECK"
    AI_EXTRACTED = "AI_EXTRACTED"
    AI_FAILED = "AI_FAILED"
    FINALIZED = "FINALIZED"


@dataclass
class IngestionRun:
    user_id: uuid.UUID
    text: str
    filename: Optional[str] = None
    currency: Optional[str] = None
    template: Optional[ExtractionResult] = None
    ai: Optional[ExtractionResult] = None
    final: Optional[ExtractionResult] = None
    method: Optional[str] = None
    quota_exhausted: bool = False
    fallback_error: Optional[str] = None
    trace: List[IngestionState] = field(default_factory=list)


def merge_hybrid(ai: ExtractionResult, template: ExtractionResult) -> ExtractionResult:
    """AI rows plus template rows the AI missed, matched on (date, amount)."""
    remaining: Counter[Tuple[object, Decimal]] = Counter((t.date, t.amount) for t in ai.transactions)
    extra = []
    for txn in template.transactions:
        key = (txn.date, txn.amount)
        if remaining[key] > 0:
            remaining[key] -= 1
            continue
        txn.needs_review = True
        extra.append(txn)
    return ExtractionResult(
        transactions=list(ai.transactions) + extra,
        confidence=ai.confidence,
        metadata=ai.metadata,
        template=ai.template,
        errors=list(template.errors),
    )


class IngestionOrchestrator:
    """
    Confidence-gated decision tree as an explicit state machine.

    Each handler returns the next state; the visited states are recorded on the
    run so every terminal path can be asserted on.
    """

    def __init__(
        self,
        pattern_extractor: PatternExtractor,
        llm_extractor: LlmExtractor,
        quota_service: QuotaService,
        category_repo=None,
        threshold: Optional[int] = None,
    ) -> None:
        self.pattern_extractor = pattern_extractor
        self.llm_extractor = llm_extractor
        self.quota_service = quota_service
        self.category_repo = category_repo
        self.threshold = settings.CONFIDENCE_THRESHOLD if threshold is None else threshold
        self.logger = get_json_logger("ingestion")
        self._handlers: Dict[IngestionState, Callable[[IngestionRun], Awaitable[IngestionState]]] = {
            IngestionState.PARSED: self._on_parsed,
            IngestionState.TEMPLATE_MATCHED: self._on_template_matched,
            IngestionState.ACCEPTED: self._on_accepted,
            IngestionState.LOW_CONFIDENCE: self._on_low_confidence,
            IngestionState.QUOTA_CHECK: self._on_quota_check,
            IngestionState.AI_EXTRACTED: self._on_ai_extracted,
            IngestionState.AI_FAILED: self._on_ai_failed,
        }

    async def run(self, user_id: uuid.UUID, text: str, filename: Optional[str] = None, currency: Optional[str] = None) -> IngestionRun:
        run = IngestionRun(user_id=user_id, text=text, filename=filename, currency=currency)
        state = IngestionState.PARSED
        while state is not IngestionState.FINALIZED:
            run.trace.append(state)
            state = await self._handlers[state](run)
        run.trace.append(IngestionState.FINALIZED)
        self.logger.info(
            "ingestion_decided",
            extra={"extra": {
                "user_id": str(user_id),
                "filename": filename,
                "method": run.method,
                "confidence": run.final.confidence if run.final else None,
                "trace": [s.value for s in run.trace],
            }},
        )
        return run

    async def _on_parsed(self, run: IngestionRun) -> IngestionState:
        run.template = self.pattern_extractor.extract(run.text, currency=run.currency)
        return IngestionState.TEMPLATE_MATCHED

    async def _on_template_matched(self, run: IngestionRun) -> IngestionState:
        assert run.template is not None
        if run.template.confidence >= self.threshold:
            return IngestionState.ACCEPTED
        return IngestionState.LOW_CONFIDENCE

    async def _on_accepted(self, run: IngestionRun) -> IngestionState:
        run.final, run.method = run.template, "template"
        return IngestionState.FINALIZED

    async def _on_low_confidence(self, run: IngestionRun) -> IngestionState:
        return IngestionState.QUOTA_CHECK

    async def _on_quota_check(self, run: IngestionRun) -> IngestionState:
        if not self.llm_extractor.available:
            self.logger.info("fallback_not_configured", extra={"extra": {"user_id": str(run.user_id)}})
            return self._finalize_template_for_review(run)
        try:
            quota = await self.quota_service.check_quota(run.user_id)
            available = quota.available
        except Exception as exc:
            self.logger.warning("quota_check_failed", extra={"extra": {"user_id": str(run.user_id), "error": str(exc)}})
            available = False
        if not available:
            run.quota_exhausted = True
            return self._finalize_template_for_review(run)

        categories = await self._categories(run.user_id)
        try:
            run.ai = await self.llm_extractor.extract(run.text, filename=run.filename, categories=categories, currency=run.currency)
        except FallbackServiceError as exc:
            run.fallback_error = str(exc)
            return IngestionState.AI_FAILED
        except Exception as exc:
            run.fallback_error = f"unexpected fallback error: {exc}"
            return IngestionState.AI_FAILED
        return IngestionState.AI_EXTRACTED

    async def _on_ai_extracted(self, run: IngestionRun) -> IngestionState:
        assert run.ai is not None and run.template is not None
        try:
            await self.quota_service.increment_usage(run.user_id)
        except Exception as exc:
            self.logger.error("quota_increment_failed", extra={"extra": {"user_id": str(run.user_id), "error": str(exc)}})
        if run.template.transactions:
            run.final, run.method = merge_hybrid(run.ai, run.template), "hybrid"
        else:
            run.final, run.method = run.ai, "ai"
        for txn in run.final.transactions:
            txn.needs_review = True
        return IngestionState.FINALIZED

    async def _on_ai_failed(self, run: IngestionRun) -> IngestionState:
        self.logger.error("fallback_failed", extra={"extra": {"user_id": str(run.user_id), "filename": run.filename, "error": run.fallback_error}})
        return self._finalize_template_for_review(run)

    def _finalize_template_for_review(self, run: IngestionRun) -> IngestionState:
        assert run.template is not None
        for txn in run.template.transactions:
            txn.needs_review = True
        run.final, run.method = run.template, "template"
        return IngestionState.FINALIZED

    async def _categories(self, user_id: uuid.UUID) -> List[Dict[str, str]]:
        if self.category_repo is None:
            return []
        try:
            return await self.category_repo.list_categories(user_id)
        except Exception as exc:
            self.logger.warning("categories_unavailable", extra={"extra": {"user_id": str(user_id), "error": str(exc)}})
            return []


class IngestionService:
    """
    Public document ingestion boundary: bytes in, envelope out.

    Nothing raised inside the pipeline escapes ingest_document.
    """

    def __init__(
        self,
        orchestrator: IngestionOrchestrator,
        normalizer: Normalizer,
        gate: PersistenceGate,
        file_repo=None,
    ) -> None:
        self.orchestrator = orchestrator
        self.normalizer = normalizer
        self.gate = gate
        self.file_repo = file_repo
        self.logger = get_json_logger("ingestion")

    async def ingest_document(
        self,
        user_id: uuid.UUID,
        content: bytes,
        mime_type: Optional[str],
        filename: Optional[str],
        currency: Optional[str] = None,
    ) -> IngestionResponse:
        content_hash = hashlib.sha256(content).hexdigest()
        file_id: Optional[uuid.UUID] = None
        try:
            if self.file_repo is not None:
                file_id = await self.file_repo.create(user_id, filename or "upload", content_hash, mime_type)
            text = extract_text(content, mime_type, filename)
            run = await self.orchestrator.run(user_id, text, filename=filename, currency=currency)
            assert run.final is not None and run.method is not None
            transactions = await self.normalizer.normalize(user_id, run.final.transactions)
            saved = await self.gate.save_batch(user_id, transactions, source_file=content_hash, statement_file_id=file_id)
            run.final.duplicates_skipped = saved.skipped
            if file_id is not None:
                meta = run.final.metadata
                await self.file_repo.finish(
                    file_id,
                    status="completed",
                    processing_method=run.method,
                    confidence_score=run.final.confidence,
                    institution=meta.institution,
                    statement_date=meta.statement_date,
                    document_metadata=meta.as_dict(),
                    inserted_count=saved.inserted,
                    skipped_count=run.final.duplicates_skipped,
                )
            return format_success(
                file_id=str(file_id) if file_id else None,
                name=filename,
                method=run.method,
                confidence=run.final.confidence,
                transactions=transactions,
                metadata=run.final.metadata,
                saved=saved,
            )
        except Exception as exc:
            self.logger.error(
                "ingestion_failed",
                extra={"extra": {"user_id": str(user_id), "filename": filename, "kind": getattr(exc, "kind", exc.__class__.__name__), "error": str(exc)}},
            )
            await self._mark_failed(file_id, exc)
            return format_error(exc, file_id=str(file_id) if file_id else None, name=filename)

    async def _mark_failed(self, file_id: Optional[uuid.UUID], exc: Exception) -> None:
        if file_id is None or self.file_repo is None:
            return
        try:
            await self.file_repo.finish(file_id, status="failed", error_message=str(exc)[:1000])
        except Exception:
            self.logger.exception("statement_file_update_failed")

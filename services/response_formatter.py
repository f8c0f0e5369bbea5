from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from schemas.ingestion import (
    ErrorInfo,
    Extraction,
    FileDescriptor,
    IngestionResponse,
    InstallmentOut,
    ResultMetadata,
    Summary,
    TransactionOut,
)
from services.persistence_gate import SaveResult
from transactions.models import INCOME, CandidateTransaction, DocumentMetadata


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), ROUND_HALF_UP))


def summarize(transactions: Iterable[CandidateTransaction]) -> Summary:
    income = Decimal("0")
    expenses = Decimal("0")
    count = 0
    for txn in transactions:
        count += 1
        if txn.transaction_type == INCOME:
            income += txn.amount
        else:
            expenses += txn.amount
    return Summary(
        total_transactions=count,
        total_income=_money(income),
        total_expenses=_money(expenses),
        net_balance=_money(income - expenses),
    )


def transaction_out(txn: CandidateTransaction) -> TransactionOut:
    installment = None
    if txn.installment is not None:
        installment = InstallmentOut(number=txn.installment.number, total=txn.installment.total, group_id=str(txn.installment.group_id))
    return TransactionOut(
        date=txn.date,
        transaction_datetime=txn.transaction_datetime,
        description=txn.description,
        merchant=txn.merchant,
        amount=_money(txn.amount),
        type=txn.transaction_type,
        currency=txn.currency,
        category_id=str(txn.category_id) if txn.category_id else None,
        confidence=txn.confidence,
        needs_review=txn.needs_review,
        processed_by_ai=txn.processed_by_ai,
        installment=installment,
        amount_usd=float(txn.amount_usd) if txn.amount_usd is not None else None,
    )


def format_success(
    *,
    file_id: Optional[str],
    name: Optional[str],
    method: str,
    confidence: int,
    transactions: List[CandidateTransaction],
    metadata: Optional[DocumentMetadata],
    saved: SaveResult,
    malformed: int = 0,
) -> IngestionResponse:
    return IngestionResponse(
        success=True,
        file=FileDescriptor(id=file_id, name=name, processing_method=method, confidence_score=confidence),
        extraction=Extraction(
            document_metadata=metadata.as_dict() if metadata else None,
            transactions=[transaction_out(t) for t in transactions],
            summary=summarize(transactions),
        ),
        metadata=ResultMetadata(
            needs_review=any(t.needs_review for t in transactions),
            inserted_count=saved.inserted,
            duplicate_count=saved.skipped,
            failed_count=saved.failed,
            malformed_count=malformed,
        ),
    )


def format_error(exc: BaseException, *, file_id: Optional[str] = None, name: Optional[str] = None) -> IngestionResponse:
    message = str(exc) or exc.__class__.__name__
    return IngestionResponse(
        success=False,
        file=FileDescriptor(id=file_id, name=name),
        extraction=Extraction(),
        error=ErrorInfo(
            message=message,
            kind=getattr(exc, "kind", exc.__class__.__name__),
            details=message.splitlines()[0] if message else None,
        ),
    )


def render_text_summary(response: IngestionResponse) -> str:
    """Plain-text rendering for notifications and logs."""
    if not response.success:
        err = response.error
        return f"Processing failed: {err.message if err else 'unknown error'}"
    s = response.extraction.summary
    lines = [
        f"File: {response.file.name or '-'}",
        f"Method: {response.file.processing_method} (confidence {response.file.confidence_score})",
        f"Transactions: {s.total_transactions} (new {response.metadata.inserted_count}, duplicates {response.metadata.duplicate_count})",
        f"Income: {s.total_income:,.2f}",
        f"Expenses: {s.total_expenses:,.2f}",
        f"Net: {s.net_balance:,.2f}",
    ]
    if response.metadata.needs_review:
        lines.append("Some transactions need review.")
    return "\n".join(lines)

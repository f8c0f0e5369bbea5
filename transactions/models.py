from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


INCOME = "income"
EXPENSE = "expense"

SOURCE_FILE = "file"


@dataclass(frozen=True)
class InstallmentInfo:
    number: int
    total: int
    group_id: uuid.UUID

    def __post_init__(self) -> None:
        if not (1 <= self.number <= self.total):
            raise ValueError(f"installment {self.number}/{self.total} out of range")


@dataclass
class CandidateTransaction:
    """
    One normalized movement, whatever produced it.

    amount is always the magnitude; direction lives in transaction_type.
    """

    date: date
    description: str
    amount: Decimal
    transaction_type: str
    currency: str
    source: str = SOURCE_FILE
    merchant: Optional[str] = None
    reference: Optional[str] = None
    balance: Optional[Decimal] = None
    confidence: int = 0
    transaction_datetime: Optional[datetime] = None
    provider_transaction_id: Optional[str] = None
    provider_timestamp: Optional[datetime] = None
    category_id: Optional[uuid.UUID] = None
    needs_review: bool = False
    processed_by_ai: bool = False
    installment: Optional[InstallmentInfo] = None
    # Group key proposed by the LLM; resolved to a uuid by the installment detector
    installment_hint: Optional[tuple[str, int, int]] = None
    amount_usd: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    exchange_rate_date: Optional[date] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.transaction_type == INCOME else -self.amount


@dataclass
class DocumentMetadata:
    institution: Optional[str] = None
    account_id: Optional[str] = None
    account_type: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    statement_date: Optional[date] = None
    opening_balance: Optional[Decimal] = None
    closing_balance: Optional[Decimal] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "institution": self.institution,
            "account_id": self.account_id,
            "account_type": self.account_type,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "statement_date": self.statement_date.isoformat() if self.statement_date else None,
            "opening_balance": float(self.opening_balance) if self.opening_balance is not None else None,
            "closing_balance": float(self.closing_balance) if self.closing_balance is not None else None,
        }


@dataclass
class ExtractionResult:
    transactions: List[CandidateTransaction] = field(default_factory=list)
    confidence: int = 0
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)
    template: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    duplicates_skipped: int = 0

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


ProcessingMethod = Literal["template", "ai", "hybrid", "api"]


class InstallmentOut(BaseModel):
    number: int
    total: int
    group_id: str


class TransactionOut(BaseModel):
    date: date
    # Set when the source carries time of day
    transaction_datetime: Optional[datetime] = None
    description: str
    merchant: Optional[str] = None
    amount: float = Field(ge=0)
    type: Literal["income", "expense"]
    currency: str
    category_id: Optional[str] = None
    confidence: int
    needs_review: bool = False
    processed_by_ai: bool = False
    installment: Optional[InstallmentOut] = None
    amount_usd: Optional[float] = None


class Summary(BaseModel):
    total_transactions: int = 0
    total_income: float = 0.0
    total_expenses: float = 0.0
    net_balance: float = 0.0


class FileDescriptor(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    processing_method: Optional[ProcessingMethod] = None
    confidence_score: Optional[int] = None


class Extraction(BaseModel):
    document_metadata: Optional[Dict[str, Any]] = None
    transactions: List[TransactionOut] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)


class ErrorInfo(BaseModel):
    message: str
    kind: str
    details: Optional[str] = None


class ResultMetadata(BaseModel):
    needs_review: bool = False
    inserted_count: int = 0
    duplicate_count: int = 0
    failed_count: int = 0
    # Provider records that could not be read (sync only)
    malformed_count: int = 0


class IngestionResponse(BaseModel):
    """Same shape for success and failure."""

    success: bool
    file: FileDescriptor = Field(default_factory=FileDescriptor)
    extraction: Extraction = Field(default_factory=Extraction)
    error: Optional[ErrorInfo] = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)


class QuotaStatus(BaseModel):
    available: bool
    used: int
    limit: int
    remaining: int
    month: str
    reset_date: date


class QuotaMonth(BaseModel):
    month: str
    used: int
    limit: int


class SyncRequest(BaseModel):
    access_token: str = Field(min_length=1)
    since: Optional[str] = None
    reference_currency: Optional[str] = Field(default=None, min_length=3, max_length=8)
    accounts: List[str] = Field(default_factory=list)
    # Enable Banking session from the authorization flow
    session_id: Optional[str] = None


class ReviewRequest(BaseModel):
    transaction_ids: List[str] = Field(min_length=1)

from __future__ import annotations

from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class LlmInstallment(BaseModel):
    number: int = Field(ge=1)
    total: int = Field(ge=2)
    group_key: Optional[str] = None

    @model_validator(mode="after")
    def number_within_total(self) -> "LlmInstallment":
        if self.number > self.total:
            raise ValueError("installment number exceeds total")
        return self


class LlmTransaction(BaseModel):
    date: date
    description: str = Field(min_length=1)
    amount: float = Field(ge=0)
    type: Literal["income", "expense"]
    currency: Optional[str] = Field(default=None, min_length=3, max_length=8)
    reference: Optional[str] = None
    category_id: Optional[str] = None
    installment: Optional[LlmInstallment] = None

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    @field_validator("amount", mode="before")
    @classmethod
    def magnitude(cls, v):
        # Models occasionally keep the sign despite instructions
        if isinstance(v, (int, float)):
            return abs(v)
        return v


class LlmDocumentMetadata(BaseModel):
    institution: Optional[str] = None
    account_id: Optional[str] = None
    account_type: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    statement_date: Optional[date] = None
    opening_balance: Optional[float] = None
    closing_balance: Optional[float] = None


class LlmExtraction(BaseModel):
    document_metadata: LlmDocumentMetadata = Field(default_factory=LlmDocumentMetadata)
    transactions: List[LlmTransaction] = Field(default_factory=list)

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Date,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        # Partial in practice: NULL provider ids never collide in Postgres
        UniqueConstraint("user_id", "source", "provider_transaction_id", name="uq_transactions_provider_id"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_magnitude"),
        CheckConstraint(
            "installment_number IS NULL OR (installment_number > 0 AND installment_total > 0 AND installment_number <= installment_total)",
            name="ck_transactions_installment_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    txn_datetime: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    merchant: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount: Mapped[float] = mapped_column(Numeric(18, 2), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_timestamp: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    source_file_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    statement_file_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    processed_by_ai: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    installment_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    installment_total: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    installment_group_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    amount_usd: Mapped[Optional[float]] = mapped_column(Numeric(18, 2), nullable=True)
    exchange_rate: Mapped[Optional[float]] = mapped_column(Numeric(18, 6), nullable=True)
    exchange_rate_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSON, nullable=False, server_default=text("'{}'::jsonb"))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)


class CategoryRuleRecord(Base):
    __tablename__ = "category_rules"
    __table_args__ = (
        CheckConstraint("match_type IN ('exact', 'contains')", name="ck_category_rules_match_type"),
        CheckConstraint("match_field IN ('description', 'reference')", name="ck_category_rules_match_field"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    category_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    keyword: Mapped[str] = mapped_column(Text, nullable=False)
    match_type: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'contains'"))
    match_field: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'description'"))
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    __table_args__ = (UniqueConstraint("rate_date", "currency_from", "currency_to", name="uq_exchange_rates_key"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    currency_from: Mapped[str] = mapped_column(String(8), nullable=False)
    currency_to: Mapped[str] = mapped_column(String(8), nullable=False)
    rate: Mapped[float] = mapped_column(Numeric(18, 6), nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class AiUsageQuota(Base):
    __tablename__ = "ai_usage_quota"
    __table_args__ = (
        UniqueConstraint("user_id", "month_year", name="uq_ai_usage_quota_user_month"),
        CheckConstraint("usage_count >= 0", name="ck_ai_usage_quota_count"),
        CheckConstraint("monthly_limit > 0", name="ck_ai_usage_quota_limit"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    month_year: Mapped[str] = mapped_column(String(7), nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    monthly_limit: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("20"))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class StatementFile(Base):
    __tablename__ = "statement_files"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'processing'"))
    processing_method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    confidence_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    institution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    statement_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    document_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, server_default=text("'{}'::jsonb"))
    inserted_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

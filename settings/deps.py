from __future__ import annotations

import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ai_services.categorization import CategorizationService
from ai_services.llm_extraction import LlmExtractor
from db.postgres import get_async_session
from extraction.pattern_extractor import PatternExtractor
from repositories.category_repo_pg import CategoryRepositoryPg
from repositories.exchange_rate_repo_pg import ExchangeRateRepositoryPg
from repositories.quota_repo_pg import QuotaRepositoryPg
from repositories.statement_file_repo_pg import StatementFileRepositoryPg
from repositories.transaction_repo_pg import TransactionRepositoryPg
from services.exchange_rates import CurrencyConverter
from services.persistence_gate import PersistenceGate
from services.quota import QuotaService
from sync.sync_service import SyncService
from transactions.normalization import Normalizer
from upload_service.ingestion_service import IngestionOrchestrator, IngestionService


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> uuid.UUID:
	"""
	Resolve the caller from the `X-User-ID` header set by the auth gateway in front of this service.
	"""
	if not x_user_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
	try:
		return uuid.UUID(x_user_id)
	except ValueError:
		raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-User-ID header")


def build_normalizer(session: AsyncSession, reference_currency: Optional[str] = None) -> Normalizer:
	return Normalizer(
		categorization=CategorizationService(CategoryRepositoryPg(session)),
		converter=CurrencyConverter(ExchangeRateRepositoryPg(session), reference_currency=reference_currency),
	)


async def get_quota_service(session: AsyncSession = Depends(get_async_session)) -> QuotaService:
	return QuotaService(QuotaRepositoryPg(session))


async def get_transaction_repo(session: AsyncSession = Depends(get_async_session)) -> TransactionRepositoryPg:
	return TransactionRepositoryPg(session)


async def get_ingestion_service(session: AsyncSession = Depends(get_async_session)) -> IngestionService:
	txn_repo = TransactionRepositoryPg(session)
	orchestrator = IngestionOrchestrator(
		pattern_extractor=PatternExtractor(),
		llm_extractor=LlmExtractor(),
		quota_service=QuotaService(QuotaRepositoryPg(session)),
		category_repo=CategoryRepositoryPg(session),
	)
	return IngestionService(
		orchestrator=orchestrator,
		normalizer=build_normalizer(session),
		gate=PersistenceGate(txn_repo),
		file_repo=StatementFileRepositoryPg(session),
	)


def sync_service_for(session: AsyncSession, reference_currency: Optional[str] = None) -> SyncService:
	txn_repo = TransactionRepositoryPg(session)
	return SyncService(
		txn_repo=txn_repo,
		normalizer=build_normalizer(session, reference_currency),
		gate=PersistenceGate(txn_repo),
	)

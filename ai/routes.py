from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends, Query

from schemas.ingestion import QuotaMonth, QuotaStatus
from services.quota import QuotaService
from settings.deps import get_current_user_id, get_quota_service

router = APIRouter(prefix="/ai", tags=["ai"])


@router.get("/quota", response_model=QuotaStatus)
async def get_quota(
	user_id: uuid.UUID = Depends(get_current_user_id),
	quota: QuotaService = Depends(get_quota_service),
) -> QuotaStatus:
	return await quota.check_quota(user_id)


@router.get("/quota/history", response_model=List[QuotaMonth])
async def get_quota_history(
	months: int = Query(6, ge=1, le=24),
	user_id: uuid.UUID = Depends(get_current_user_id),
	quota: QuotaService = Depends(get_quota_service),
) -> List[QuotaMonth]:
	return await quota.usage_history(user_id, months)

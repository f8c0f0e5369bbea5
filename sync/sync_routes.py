from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from db.postgres import get_async_session
from schemas.ingestion import IngestionResponse, SyncRequest
from settings.deps import get_current_user_id, sync_service_for
from sync.base import SyncCredentials
from sync.sync_service import ADAPTERS

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/{provider}", response_model=IngestionResponse)
async def sync_provider(
    provider: str,
    body: SyncRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
) -> IngestionResponse:
    if provider not in ADAPTERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}")
    service = sync_service_for(session, body.reference_currency)
    credentials = SyncCredentials(access_token=body.access_token, accounts=body.accounts, session_id=body.session_id)
    return await service.sync(user_id, provider, credentials, since=body.since)

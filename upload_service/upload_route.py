from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from schemas.ingestion import IngestionResponse
from settings.deps import get_current_user_id, get_ingestion_service
from upload_service.ingestion_service import IngestionService

router = APIRouter(prefix="/ingestion", tags=["ingestion"])


@router.post("/documents", response_model=IngestionResponse)
async def ingest_document(
    file: UploadFile = File(...),
    currency: Optional[str] = Form(default=None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> IngestionResponse:
    if file is None or file.filename is None or file.filename.strip() == "":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided")
    content = await file.read()
    return await service.ingest_document(
        user_id,
        content,
        mime_type=file.content_type,
        filename=file.filename,
        currency=currency.upper() if currency else None,
    )

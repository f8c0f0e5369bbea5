from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from repositories.transaction_repo_pg import TransactionRepositoryPg
from schemas.ingestion import ReviewRequest
from settings.deps import get_current_user_id, get_transaction_repo


router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.post("/review")
async def confirm_reviewed(
    body: ReviewRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: TransactionRepositoryPg = Depends(get_transaction_repo),
):
    try:
        ids = [uuid.UUID(t) for t in body.transaction_ids]
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid transaction id")
    updated = await repo.mark_reviewed(user_id, ids)
    return {"status": "ok", "updated": updated}

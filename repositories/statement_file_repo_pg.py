from __future__ import annotations

import uuid
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import StatementFile


class StatementFileRepositoryPg:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, user_id: uuid.UUID, filename: str, content_hash: str, mime_type: Optional[str]) -> uuid.UUID:
        record = StatementFile(user_id=user_id, filename=filename, content_hash=content_hash, mime_type=mime_type, status="processing")
        self._session.add(record)
        await self._session.flush()
        await self._session.commit()
        return record.id

    async def finish(self, file_id: uuid.UUID, **fields: Any) -> None:
        """Record the outcome; fields are StatementFile columns (status, processing_method, counts...)."""
        await self._session.execute(update(StatementFile).where(StatementFile.id == file_id).values(**fields))
        await self._session.commit()

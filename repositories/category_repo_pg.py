from __future__ import annotations

import uuid
from typing import Dict, List

from sqlalchemy import and_, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from ai_services.categorization import CategoryRule
from db.models import Category, CategoryRuleRecord


class CategoryRepositoryPg:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_rules(self, user_id: uuid.UUID) -> List[CategoryRule]:
        """Active rules in the user's order: priority first, then creation time."""
        stmt = (
            select(CategoryRuleRecord)
            .where(and_(CategoryRuleRecord.user_id == user_id, CategoryRuleRecord.is_active.is_(True)))
            .order_by(desc(CategoryRuleRecord.priority), CategoryRuleRecord.created_at, CategoryRuleRecord.id)
        )
        res = await self._session.execute(stmt)
        return [
            CategoryRule(
                keyword=r.keyword,
                category_id=r.category_id,
                match_type=r.match_type,
                match_field=r.match_field,
                priority=r.priority,
            )
            for r in res.scalars().all()
        ]

    async def list_categories(self, user_id: uuid.UUID) -> List[Dict[str, str]]:
        res = await self._session.execute(select(Category).where(Category.user_id == user_id).order_by(Category.name))
        return [{"id": str(c.id), "name": c.name} for c in res.scalars().all()]

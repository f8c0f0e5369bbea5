from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from services.json_logger import get_json_logger
from transactions.models import CandidateTransaction


MATCH_CONTAINS = "contains"
MATCH_EXACT = "exact"
FIELD_DESCRIPTION = "description"
FIELD_REFERENCE = "reference"


@dataclass(frozen=True)
class CategoryRule:
    keyword: str
    category_id: uuid.UUID
    match_type: str = MATCH_CONTAINS
    match_field: str = FIELD_DESCRIPTION
    priority: int = 0


class RuleBasedCategorizer:
    """
    Keyword rules for one user.

    When several rules match, the longest keyword wins; equal lengths fall back
    to the higher priority, then to the earlier rule in the user's ordering.
    """

    def __init__(self, rules: Sequence[CategoryRule]) -> None:
        self.rules = list(rules)
        # Precompute folded keywords once per batch
        self._prepared: List[Tuple[int, CategoryRule, str]] = []
        for position, rule in enumerate(self.rules):
            keyword = rule.keyword.strip().casefold()
            if keyword:
                self._prepared.append((position, rule, keyword))

    def match(self, description: Optional[str], reference: Optional[str] = None) -> Optional[CategoryRule]:
        best: Optional[Tuple[Tuple[int, int, int], CategoryRule]] = None
        for position, rule, keyword in self._prepared:
            value = reference if rule.match_field == FIELD_REFERENCE else description
            if not value:
                continue
            folded = value.casefold()
            if rule.match_type == MATCH_EXACT:
                hit = folded.strip() == keyword
            else:
                hit = keyword in folded
            if not hit:
                continue
            rank = (len(keyword), rule.priority, -position)
            if best is None or rank > best[0]:
                best = (rank, rule)
        return best[1] if best else None

    def categorize(self, transaction: CandidateTransaction) -> Optional[uuid.UUID]:
        if transaction.category_id is not None:
            return transaction.category_id
        rule = self.match(transaction.description, transaction.reference)
        return rule.category_id if rule else None


class CategorizationService:
    """Applies a user's rule set to a batch; a missing rule set leaves the batch uncategorized."""

    def __init__(self, rule_repo=None) -> None:
        self.rule_repo = rule_repo
        self.logger = get_json_logger("categorization")

    async def load_rules(self, user_id: uuid.UUID) -> List[CategoryRule]:
        if self.rule_repo is None:
            return []
        return await self.rule_repo.list_rules(user_id)

    def categorize(self, transaction: CandidateTransaction, rules: Sequence[CategoryRule]) -> Optional[uuid.UUID]:
        return RuleBasedCategorizer(rules).categorize(transaction)

    async def categorize_batch(self, user_id: uuid.UUID, transactions: Iterable[CandidateTransaction]) -> int:
        """Assign categories in place; returns how many were newly categorized."""
        txns = list(transactions)
        try:
            rules = await self.load_rules(user_id)
        except Exception as exc:
            self.logger.warning("category_rules_unavailable", extra={"extra": {"user_id": str(user_id), "error": str(exc)}})
            return 0
        categorizer = RuleBasedCategorizer(rules)
        assigned = 0
        for txn in txns:
            if txn.category_id is not None:
                continue
            category_id = categorizer.categorize(txn)
            if category_id is not None:
                txn.category_id = category_id
                assigned += 1
        self.logger.info("categorized_batch", extra={"extra": {"user_id": str(user_id), "transactions": len(txns), "assigned": assigned, "rules": len(rules)}})
        return assigned

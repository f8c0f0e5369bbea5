import uuid
from datetime import date
from decimal import Decimal

import pytest

from ai_services.categorization import CategorizationService, CategoryRule, RuleBasedCategorizer
from transactions.models import CandidateTransaction

from conftest import FakeCategoryRepo


SHOPPING = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
STREAMING = uuid.UUID("00000000-0000-0000-0000-0000000000a2")
FOOD = uuid.UUID("00000000-0000-0000-0000-0000000000a3")
SALARY = uuid.UUID("00000000-0000-0000-0000-0000000000a4")


def _txn(description: str, category_id=None, reference=None) -> CandidateTransaction:
    return CandidateTransaction(
        date=date(2024, 3, 1),
        description=description,
        amount=Decimal("10.00"),
        transaction_type="expense",
        currency="ARS",
        category_id=category_id,
        reference=reference,
    )


def test_longest_keyword_wins():
    rules = [CategoryRule("amazon", SHOPPING), CategoryRule("amazon prime", STREAMING)]
    categorizer = RuleBasedCategorizer(rules)
    assert categorizer.categorize(_txn("AMAZON PRIME VIDEO")) == STREAMING
    assert categorizer.categorize(_txn("Amazon marketplace")) == SHOPPING


def test_existing_category_is_kept():
    categorizer = RuleBasedCategorizer([CategoryRule("amazon", SHOPPING)])
    assert categorizer.categorize(_txn("AMAZON", category_id=FOOD)) == FOOD


def test_exact_match_requires_whole_value():
    categorizer = RuleBasedCategorizer([CategoryRule("cafe", FOOD, match_type="exact")])
    assert categorizer.categorize(_txn("  CAFE ")) == FOOD
    assert categorizer.categorize(_txn("CAFE MARTINEZ")) is None


def test_reference_field_rules():
    categorizer = RuleBasedCategorizer([CategoryRule("haberes", SALARY, match_field="reference")])
    assert categorizer.categorize(_txn("TRANSFERENCIA", reference="HABERES MARZO")) == SALARY
    assert categorizer.categorize(_txn("HABERES")) is None


def test_equal_length_ties_break_on_priority_then_order():
    rules = [CategoryRule("coto", FOOD, priority=1), CategoryRule("COTO", SHOPPING, priority=5)]
    assert RuleBasedCategorizer(rules).categorize(_txn("SUPERMERCADO COTO")) == SHOPPING

    same_priority = [CategoryRule("coto", FOOD), CategoryRule("coto", SHOPPING)]
    assert RuleBasedCategorizer(same_priority).categorize(_txn("SUPERMERCADO COTO")) == FOOD


def test_no_rules_leaves_uncategorized():
    assert RuleBasedCategorizer([]).categorize(_txn("anything")) is None


@pytest.mark.asyncio
async def test_categorize_batch_counts_new_assignments(user_id):
    repo = FakeCategoryRepo(rules=[CategoryRule("netflix", STREAMING)])
    txns = [_txn("NETFLIX.COM"), _txn("NETFLIX.COM", category_id=FOOD), _txn("KIOSCO")]
    assigned = await CategorizationService(repo).categorize_batch(user_id, txns)
    assert assigned == 1
    assert [t.category_id for t in txns] == [STREAMING, FOOD, None]


@pytest.mark.asyncio
async def test_rule_store_failure_leaves_batch_uncategorized(user_id):
    repo = FakeCategoryRepo(rules=[CategoryRule("netflix", STREAMING)])
    repo.fail = True
    txns = [_txn("NETFLIX.COM")]
    assert await CategorizationService(repo).categorize_batch(user_id, txns) == 0
    assert txns[0].category_id is None

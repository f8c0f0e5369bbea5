from __future__ import annotations

import json
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI
from pydantic import ValidationError

from extraction.amounts import extract_merchant
from schemas.extraction import LlmExtraction
from services.errors import FallbackServiceError
from services.json_logger import get_json_logger
from settings.config import settings
from transactions.models import CandidateTransaction, DocumentMetadata, ExtractionResult, SOURCE_FILE


AI_CONFIDENCE = 95

SYSTEM_PROMPT = (
    "You are a financial document parser for bank and credit card statements. "
    "Extract every transaction and return ONLY a JSON object, no markdown, with keys: "
    "document_metadata {institution, account_id, account_type, period_start, period_end, statement_date, "
    "opening_balance, closing_balance} and transactions [{date (YYYY-MM-DD), description, amount (positive number), "
    "type (income|expense), currency (3-letter ISO), reference, category_id, installment {number, total, group_key}}]. "
    "Reversals and refunds are income. Use null for anything not present. "
    "installment is only for payment plans such as 'Cuota 3/12'; give every installment of the same purchase the same group_key. "
    "category_id must be one of the provided category ids or null."
)


def _client() -> Optional[AsyncOpenAI]:
    if not settings.OPENAI_API_KEY:
        return None
    return AsyncOpenAI(api_key=settings.OPENAI_API_KEY)


def truncate_text(text: str, budget: int) -> str:
    """Keep the head of the document within the character budget."""
    if len(text) <= budget:
        return text
    return text[:budget]


def _build_user_prompt(text: str, filename: Optional[str], categories: Sequence[Dict[str, str]]) -> str:
    category_lines = "\n".join(f"- {c['id']}: {c['name']}" for c in categories) or "- (none)"
    return (
        f"FILE NAME: {filename or 'unknown'}\n"
        f"USER CATEGORIES (id: name):\n{category_lines}\n"
        "DOCUMENT CONTENT:\n"
        f"{text}\n"
        "Return ONLY the JSON object, no extra text."
    )


def _parse_json(content: str) -> Dict[str, Any]:
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end == -1:
        raise ValueError("Model did not return JSON")
    return json.loads(content[start : end + 1])


class LlmExtractor:
    """
    Low-confidence fallback: re-extract a whole statement with an LLM.

    Raises FallbackServiceError on any failure so the orchestrator can keep the
    template result.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None, retries: Optional[int] = None) -> None:
        self.client = client if client is not None else _client()
        self.model = model or settings.LLM_MODEL
        self.retries = settings.LLM_RETRIES if retries is None else retries
        self.logger = get_json_logger("llm_extractor")

    @property
    def available(self) -> bool:
        return self.client is not None

    async def extract(
        self,
        text: str,
        filename: Optional[str] = None,
        categories: Sequence[Dict[str, str]] = (),
        currency: Optional[str] = None,
    ) -> ExtractionResult:
        if self.client is None:
            raise FallbackServiceError("OPENAI_API_KEY not configured")

        budget = settings.LLM_TEXT_BUDGET
        if len(text) > budget:
            self.logger.warning(
                "llm_text_truncated",
                extra={"extra": {"filename": filename, "chars": len(text), "budget": budget, "dropped": len(text) - budget}},
            )
        prompt = _build_user_prompt(truncate_text(text, budget), filename, categories)

        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                resp = await self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=0.0,
                    max_tokens=settings.LLM_MAX_TOKENS,
                )
                content = resp.choices[0].message.content or "{}"
                parsed = LlmExtraction.model_validate(_parse_json(content))
                self.logger.info("llm_extraction", extra={"extra": {"filename": filename, "attempt": attempt, "transactions": len(parsed.transactions)}})
                return self._to_result(parsed, categories, currency)
            except (ValidationError, ValueError) as e:
                last_error = e
                # Adjust prompt with error feedback
                prompt = prompt + f"\nPrevious output invalid due to: {str(e)[:500]}. Return strict JSON with required keys."
                continue
            except Exception as e:
                last_error = e
                break
        raise FallbackServiceError(f"LLM extraction failed: {last_error}")

    def _to_result(self, parsed: LlmExtraction, categories: Sequence[Dict[str, str]], currency: Optional[str]) -> ExtractionResult:
        allowed = {str(c["id"]) for c in categories}
        default_currency = (currency or settings.DEFAULT_CURRENCY).upper()
        transactions: List[CandidateTransaction] = []
        for item in parsed.transactions:
            category_id = uuid.UUID(item.category_id) if item.category_id in allowed else None
            hint = None
            if item.installment is not None:
                key = item.installment.group_key or item.description
                hint = (key, item.installment.number, item.installment.total)
            transactions.append(
                CandidateTransaction(
                    date=item.date,
                    description=item.description.strip(),
                    amount=Decimal(str(item.amount)).quantize(Decimal("0.01")),
                    transaction_type=item.type,
                    currency=item.currency or default_currency,
                    source=SOURCE_FILE,
                    merchant=extract_merchant(item.description),
                    reference=item.reference,
                    confidence=AI_CONFIDENCE,
                    category_id=category_id,
                    needs_review=True,
                    processed_by_ai=True,
                    installment_hint=hint,
                    raw_data={"llm": item.model_dump(mode="json")},
                )
            )
        meta = parsed.document_metadata
        metadata = DocumentMetadata(
            institution=meta.institution,
            account_id=meta.account_id,
            account_type=meta.account_type,
            period_start=meta.period_start,
            period_end=meta.period_end,
            statement_date=meta.statement_date,
            opening_balance=Decimal(str(meta.opening_balance)) if meta.opening_balance is not None else None,
            closing_balance=Decimal(str(meta.closing_balance)) if meta.closing_balance is not None else None,
        )
        return ExtractionResult(transactions=transactions, confidence=AI_CONFIDENCE, metadata=metadata, template="LLM")

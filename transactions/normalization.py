from __future__ import annotations

import uuid
from typing import List, Sequence

from ai_services.categorization import CategorizationService
from services.exchange_rates import CurrencyConverter
from services.json_logger import get_json_logger
from transactions.installments import InstallmentDetector
from transactions.models import CandidateTransaction


class Normalizer:
    """
    The one normalization path for documents and provider syncs:
    category rules, then installment grouping, then reference-currency valuation.
    """

    def __init__(self, categorization: CategorizationService, converter: CurrencyConverter, detect_installments: bool = True) -> None:
        self.categorization = categorization
        self.converter = converter
        self.detect_installments = detect_installments
        self.logger = get_json_logger("normalizer")

    async def normalize(self, user_id: uuid.UUID, transactions: Sequence[CandidateTransaction]) -> List[CandidateTransaction]:
        txns = list(transactions)
        categorized = await self.categorization.categorize_batch(user_id, txns)

        grouped = 0
        if self.detect_installments:
            detector = InstallmentDetector()
            for txn in txns:
                if txn.installment is not None:
                    continue
                if txn.installment_hint is not None:
                    txn.installment = detector.from_hint(*txn.installment_hint)
                if txn.installment is None:
                    txn.installment = detector.detect(txn.description)
                if txn.installment is not None:
                    grouped += 1

        converted = await self.converter.convert_batch(txns)
        self.logger.info(
            "normalized_batch",
            extra={"extra": {"user_id": str(user_id), "transactions": len(txns), "categorized": categorized, "installments": grouped, "converted": converted}},
        )
        return txns

from __future__ import annotations

import re
import uuid
from typing import Dict, Optional, Tuple

from transactions.models import InstallmentInfo


# Most specific first; bare N/M must not sit inside a date or another fraction
_MARKERS = [
    re.compile(r"\b(?:cuota|cta\.?|c\.|installment|pago)\s*(\d{1,2})\s*(?:/|de|of)\s*(\d{1,2})\b", re.IGNORECASE),
    re.compile(r"\b(\d{1,2})\s+(?:de|of)\s+(\d{1,2})\b", re.IGNORECASE),
]
# Two-digit pairs like 05/12 read as day/month, so bare markers need a one-digit side
_BARE = re.compile(r"(?<![\d/.\-])(?!\d\d/\d\d(?![\d/.\-]))(\d{1,2})/(\d{1,2})(?![\d/.\-])")


def find_marker(description: Optional[str]) -> Optional[Tuple[int, int, Tuple[int, int]]]:
    """Return (number, total, span) of the first valid installment marker."""
    if not description:
        return None
    for pattern in (*_MARKERS, _BARE):
        for m in pattern.finditer(description):
            number, total = int(m.group(1)), int(m.group(2))
            if 1 <= number <= total and total >= 2:
                return number, total, m.span()
    return None


def _base_key(description: str, span: Tuple[int, int]) -> str:
    stripped = description[: span[0]] + " " + description[span[1]:]
    stripped = re.sub(r"[^\w\s]", " ", stripped.casefold())
    return re.sub(r"\s+", " ", stripped).strip()


class InstallmentDetector:
    """
    Per-batch installment grouping.

    Descriptions that differ only in the "N/M" marker and share the same total
    belong to one purchase and get one group id for the life of this detector.
    """

    def __init__(self) -> None:
        self._groups: Dict[Tuple[str, int], uuid.UUID] = {}

    def group_for(self, key: str, total: int) -> uuid.UUID:
        normalized = re.sub(r"\s+", " ", key.casefold()).strip()
        return self._groups.setdefault((normalized, total), uuid.uuid4())

    def detect(self, description: Optional[str]) -> Optional[InstallmentInfo]:
        found = find_marker(description)
        if found is None:
            return None
        number, total, span = found
        assert description is not None
        return InstallmentInfo(number=number, total=total, group_id=self.group_for(_base_key(description, span), total))

    def from_hint(self, key: str, number: int, total: int) -> Optional[InstallmentInfo]:
        """Register a grouping proposed upstream (e.g. by the LLM)."""
        if not (1 <= number <= total and total >= 2):
            return None
        found = find_marker(key)
        base = _base_key(key, found[2]) if found else key
        return InstallmentInfo(number=number, total=total, group_id=self.group_for(base, total))

    @property
    def group_count(self) -> int:
        return len(self._groups)

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from extraction.amounts import (
    AmountParseError,
    DateParseError,
    extract_merchant,
    parse_amount,
    parse_date,
    try_parse_date,
)
from extraction.statement_parsers import (
    DATE_TOKEN,
    MONEY_TOKEN,
    SHEET_MARKER,
    ParserRegistry,
    RawRow,
    StatementParser,
    default_registry,
    fold,
    split_cells,
)
from extraction.text_extractor import CELL_SEPARATOR
from services.json_logger import get_json_logger
from settings.config import settings
from transactions.models import (
    EXPENSE,
    INCOME,
    SOURCE_FILE,
    CandidateTransaction,
    DocumentMetadata,
    ExtractionResult,
)


BALANCE_TOLERANCE = Decimal("0.02")

INSTITUTION_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("brubank", ("brubank", "bru bank")),
    ("hipotecario", ("banco hipotecario", "hipotecario")),
    ("santander", ("banco santander", "santander")),
    ("galicia", ("banco galicia", "galicia")),
    ("bbva", ("bbva", "banco frances")),
]

INSTITUTION_NAMES: Dict[str, str] = {
    "brubank": "Brubank",
    "hipotecario": "Banco Hipotecario",
    "santander": "Banco Santander",
    "galicia": "Banco Galicia",
    "bbva": "BBVA",
}

# Summary labels in a non-date cell ("Total", disclaimers)
_SUMMARY_CELL = re.compile(r"\b(total(es)?|saldo (anterior|inicial|final|actual)|presente documento)\b")
# A dated row is a summary only when its description is nothing but the label
_SUMMARY_LABEL = re.compile(r"^(saldo (anterior|inicial|final|actual)|total(es)?)\b(\s+(del?|al|en)\b.*)?[\s:]*$")
_MONEY = r"[\s|:$]*(-?\(?\s?\$?\s?[\d.,]*\d\)?-?)"
_OPENING = re.compile(r"(?:saldo\s+(?:anterior|inicial)|opening\s+balance)" + _MONEY, re.IGNORECASE)
_CLOSING = re.compile(r"(?:saldo\s+(?:final|actual)|closing\s+balance)" + _MONEY, re.IGNORECASE)
_CBU = re.compile(r"\b(?:CBU|CVU)\s*:?\s*(\d{22})\b", re.IGNORECASE)
_ACCOUNT = re.compile(r"\b(?:cuenta|account)(?:\s+(?:n[°ºo]\.?|nro\.?|number|no\.?))?\s*:?\s*([\d][\d\-/]{5,})", re.IGNORECASE)
_STATEMENT_DATE = re.compile(r"(?:estado de cuenta|estado del|resumen|statement date)\s*:?\s*(?:del?\s+|al\s+)?(\d{2}/\d{2}/\d{4})", re.IGNORECASE)
_PERIOD = re.compile(r"(?:per[ií]odo|desde|period)\D{0,20}(\d{2}/\d{2}/\d{2,4})\D{1,10}(\d{2}/\d{2}/\d{2,4})", re.IGNORECASE)
_ACCOUNT_TYPES: List[Tuple[str, str]] = [
    ("caja de ahorro", "savings"),
    ("savings", "savings"),
    ("cuenta corriente", "checking"),
    ("checking", "checking"),
    ("tarjeta de credito", "credit_card"),
    ("credit card", "credit_card"),
]


def detect_institution(text: str) -> Optional[str]:
    lowered = fold(text[:20000])
    for key, keywords in INSTITUTION_KEYWORDS:
        if any(k in lowered for k in keywords):
            return key
    return None


@dataclass
class _Tally:
    attempted: int = 0
    date_errors: int = 0
    amount_errors: int = 0
    described: int = 0


class PatternExtractor:
    """
    Template-based extraction over plain text.

    Picks the first parser in the registry that both supports the document and
    yields rows, coerces the rows into candidate transactions, and scores the
    result from 0 to 100.
    """

    def __init__(self, registry: Optional[ParserRegistry] = None) -> None:
        self.registry = registry or default_registry()
        self.logger = get_json_logger("pattern_extractor")

    def extract(self, text: str, institution: Optional[str] = None, currency: Optional[str] = None) -> ExtractionResult:
        lines = text.splitlines()
        inst = fold(institution) if institution else detect_institution(text)
        fingerprint = self._fingerprint(lines, inst)

        parser: Optional[StatementParser] = None
        rows: List[RawRow] = []
        for candidate in self.registry.candidates(fingerprint):
            rows = candidate.parse(lines)
            if rows:
                parser = candidate
                break

        if parser is not None and inst is None:
            inst = parser.institution

        currency_code = (currency or settings.DEFAULT_CURRENCY).upper()
        tally = _Tally()
        errors: List[str] = []
        transactions = self._coerce_rows(rows, currency_code, tally, errors)
        metadata = self._document_metadata(text, inst, transactions)
        reconciliation = self._reconcile(transactions, metadata)
        confidence = self._score(parser, transactions, tally, reconciliation, self._date_lines(lines))
        for txn in transactions:
            txn.confidence = confidence

        self.logger.info(
            "pattern_extraction",
            extra={"extra": {
                "parser": parser.name if parser else None,
                "institution": inst,
                "transactions": len(transactions),
                "date_errors": tally.date_errors,
                "amount_errors": tally.amount_errors,
                "reconciled": reconciliation,
                "confidence": confidence,
            }},
        )
        return ExtractionResult(
            transactions=transactions,
            confidence=confidence,
            metadata=metadata,
            template=parser.name if parser else None,
            errors=errors,
        )

    def _fingerprint(self, lines: List[str], institution: Optional[str]) -> Dict[str, object]:
        header_rows = []
        for line in lines:
            cells = split_cells(line)
            if len(cells) >= 2 and not DATE_TOKEN.search(line):
                header_rows.append(cells)
            if len(header_rows) >= 50:
                break
        return {
            "institution": institution,
            "header_rows": header_rows,
            "tabular": bool(header_rows),
        }

    def _coerce_rows(self, rows: List[RawRow], currency: str, tally: _Tally, errors: List[str]) -> List[CandidateTransaction]:
        out: List[CandidateTransaction] = []
        for row in rows:
            description = re.sub(r"\s+", " ", (row.get("description") or "")).strip()
            if _is_summary_row(row.get("date"), description):
                continue
            if not row.get("date") and not any(row.get(k) for k in ("amount", "debit", "credit")):
                continue
            tally.attempted += 1

            try:
                txn_date = parse_date(row.get("date"))
            except DateParseError as exc:
                tally.date_errors += 1
                errors.append(f"date: {exc}")
                continue

            needs_review = False
            try:
                signed = self._signed_amount(row)
            except AmountParseError as exc:
                tally.amount_errors += 1
                errors.append(f"amount: {exc}")
                signed = Decimal("0")
                needs_review = True

            direction = row.get("direction")
            if direction is None:
                direction = EXPENSE if signed < 0 else INCOME

            balance: Optional[Decimal] = None
            if row.get("balance"):
                try:
                    balance = parse_amount(row.get("balance"))
                except AmountParseError:
                    balance = None

            if len(description) >= 3 and re.search(r"[^\W\d_]", description):
                tally.described += 1

            out.append(
                CandidateTransaction(
                    date=txn_date,
                    description=description or "Sin descripcion",
                    amount=abs(signed),
                    transaction_type=direction,
                    currency=currency,
                    source=SOURCE_FILE,
                    merchant=extract_merchant(description),
                    reference=row.get("reference"),
                    balance=balance,
                    needs_review=needs_review,
                    raw_data={"line": row.get("line")},
                )
            )
        return out

    def _signed_amount(self, row: RawRow) -> Decimal:
        debit_raw, credit_raw = row.get("debit"), row.get("credit")
        if debit_raw or credit_raw:
            credit = parse_amount(credit_raw) if credit_raw else Decimal("0")
            debit = parse_amount(debit_raw) if debit_raw else Decimal("0")
            if credit != 0:
                return abs(credit)
            return -abs(debit)
        if row.get("amount") is None:
            raise AmountParseError("missing amount")
        value = parse_amount(row.get("amount"))
        if row.get("direction") == EXPENSE:
            return -abs(value)
        return value

    def _document_metadata(self, text: str, institution: Optional[str], transactions: List[CandidateTransaction]) -> DocumentMetadata:
        meta = DocumentMetadata(institution=INSTITUTION_NAMES.get(institution or "", institution))

        m = _OPENING.search(text)
        if m:
            meta.opening_balance = _maybe_amount(m.group(1))
        m = _CLOSING.search(text)
        if m:
            meta.closing_balance = _maybe_amount(m.group(1))

        m = _CBU.search(text) or _ACCOUNT.search(text)
        if m:
            meta.account_id = m.group(1)

        folded = fold(text[:5000])
        for needle, account_type in _ACCOUNT_TYPES:
            if needle in folded:
                meta.account_type = account_type
                break

        m = _STATEMENT_DATE.search(text)
        if m:
            meta.statement_date = try_parse_date(m.group(1))

        m = _PERIOD.search(text)
        if m:
            meta.period_start, meta.period_end = try_parse_date(m.group(1)), try_parse_date(m.group(2))
        elif transactions:
            dates = [t.date for t in transactions]
            meta.period_start, meta.period_end = min(dates), max(dates)
        return meta

    def _reconcile(self, transactions: List[CandidateTransaction], meta: DocumentMetadata) -> Optional[bool]:
        """
        True/False when balances allow a check, None when there is nothing to check.

        Document balances win; otherwise a running balance column is checked in
        both row orders since statements list oldest-first or newest-first.
        """
        if not transactions:
            return None
        if meta.opening_balance is not None and meta.closing_balance is not None:
            expected = meta.opening_balance + sum((t.signed_amount for t in transactions), Decimal("0"))
            return abs(expected - meta.closing_balance) <= BALANCE_TOLERANCE

        with_balance = [t for t in transactions if t.balance is not None]
        if len(with_balance) < 2:
            return None

        def _chain_ok(seq: List[CandidateTransaction]) -> bool:
            for prev, cur in zip(seq, seq[1:]):
                assert prev.balance is not None and cur.balance is not None
                if abs((cur.balance - prev.balance) - cur.signed_amount) > BALANCE_TOLERANCE:
                    return False
            return True

        return _chain_ok(with_balance) or _chain_ok(list(reversed(with_balance)))

    def _date_lines(self, lines: List[str]) -> int:
        count = 0
        for line in lines:
            if line.startswith(SHEET_MARKER) or _is_summary_line(line):
                continue
            if DATE_TOKEN.search(line):
                count += 1
        return count

    def _score(
        self,
        parser: Optional[StatementParser],
        transactions: List[CandidateTransaction],
        tally: _Tally,
        reconciliation: Optional[bool],
        date_lines: int,
    ) -> int:
        if not transactions:
            return 0
        n = len(transactions)
        score = 0.0
        if parser is not None and parser.template:
            score += 15
        score += 20 * (n / tally.attempted) if tally.attempted else 0
        score += 20 * ((n - tally.amount_errors) / n)
        score += 10 * (tally.described / n)
        score += 15 * min(1.0, n / date_lines) if date_lines else 0
        score += min(2 * n, 10)
        if reconciliation is True:
            score += 10
        elif reconciliation is False:
            score -= 20
        return max(0, min(100, int(round(score))))


def _is_summary_row(date_cell: Optional[str], description: str) -> bool:
    """Totals and balance lines, as opposed to movements that merely mention 'total'."""
    if date_cell and try_parse_date(date_cell) is None:
        return bool(_SUMMARY_CELL.search(fold(date_cell)))
    if not date_cell:
        return bool(_SUMMARY_CELL.search(fold(description)))
    return bool(_SUMMARY_LABEL.match(fold(description)))


def _is_summary_line(line: str) -> bool:
    folded = fold(line.replace(CELL_SEPARATOR, " "))
    dm = DATE_TOKEN.search(folded)
    if dm is None:
        return bool(_SUMMARY_CELL.search(folded))
    if _SUMMARY_CELL.search(folded[: dm.start()]):
        return True
    rest = MONEY_TOKEN.sub(" ", folded[dm.end():])
    return bool(_SUMMARY_LABEL.match(re.sub(r"\s+", " ", rest).strip()))


def _maybe_amount(raw: str) -> Optional[Decimal]:
    try:
        return parse_amount(raw)
    except AmountParseError:
        return None

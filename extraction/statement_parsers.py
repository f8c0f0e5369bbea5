from __future__ import annotations

import re
import unicodedata
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Set

from extraction.text_extractor import CELL_SEPARATOR


# Canonical row keys: date, description, amount, debit, credit, balance, reference, direction, line
RawRow = Dict[str, Optional[str]]

SHEET_MARKER = "=== Sheet:"

DATE_TOKEN = re.compile(r"(\d{4}-\d{2}-\d{2}|\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4})")
# Money with an explicit two-digit decimal part, optional sign, symbol and trailing minus
MONEY_TOKEN = re.compile(r"(?<![\w/])(-?\(?\s?(?:U\$S|US\$|\$)?\s?-?\d[\d.,]*[.,]\d{2}\)?-?)(?![\w/])")


def fold(value: Optional[str]) -> str:
    """Lowercase and strip accents so 'Débito' and 'debito' compare equal."""
    if value is None:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(value))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).strip().lower()


def split_cells(line: str) -> List[str]:
    return [cell.strip() for cell in line.split(CELL_SEPARATOR)]


class StatementParser(ABC):
    """Base interface for bank-specific statement parsers."""

    name: str = "BASE"
    version: str = "0.2.0"
    # Institution key implied by a successful match, if any
    institution: Optional[str] = None
    # False for the catch-all parsers; feeds the "template matched" confidence signal
    template: bool = True

    @abstractmethod
    def supports(self, fingerprint: Dict[str, object]) -> bool:
        """Return True if this parser should handle the document."""
        raise NotImplementedError

    @abstractmethod
    def parse(self, lines: List[str]) -> List[RawRow]:
        """Return canonical raw rows; an empty list lets the next parser try."""
        raise NotImplementedError


class ParserRegistry:
    def __init__(self, parsers: Optional[List[StatementParser]] = None) -> None:
        self.parsers = parsers or []

    def candidates(self, fingerprint: Dict[str, object]) -> Iterator[StatementParser]:
        for p in self.parsers:
            if p.supports(fingerprint):
                yield p


# --- Tabular text (CSV / spreadsheet serialized as "a | b | c") ---


class TableParser(StatementParser):
    """Locates a header row per sheet and maps the following rows through it."""

    name = "GENERIC_TABLE"
    template = True

    header_synonyms: Dict[str, Set[str]] = {
        "date": {"fecha", "date", "fecha operacion", "fecha de operacion", "fecha movimiento", "transaction date", "posted date"},
        "description": {"descripcion", "description", "detalle", "concepto", "merchant", "comercio", "narration", "movimiento"},
        "amount": {"monto", "amount", "importe", "pesos", "valor", "total", "importe pesos", "importe (pesos)"},
        "reference": {"referencia", "reference", "ref", "comprobante", "nro. comprobante"},
        "debit": {"debito", "debit", "debe", "cargo", "debitos", "egreso"},
        "credit": {"credito", "credit", "haber", "abono", "creditos", "ingreso"},
        "balance": {"saldo", "balance", "saldo pesos"},
    }
    ignored: Set[str] = set()

    def canon(self, cell: Optional[str]) -> Optional[str]:
        t = fold(cell)
        if not t or t in self.ignored:
            return None
        for key, values in self.header_synonyms.items():
            if t in values:
                return key
        if "fecha" in t or "date" in t:
            return "date"
        if "saldo" in t or "balance" in t:
            return "balance"
        if "debito" in t or "debit" in t:
            return "debit"
        if "credito" in t or "credit" in t:
            return "credit"
        if "importe" in t or "monto" in t or "amount" in t:
            return "amount"
        if any(x in t for x in ("descrip", "detalle", "concepto")):
            return "description"
        if "referencia" in t or "reference" in t:
            return "reference"
        return None

    def header_mapping(self, cells: List[str]) -> Dict[int, str]:
        mapping: Dict[int, str] = {}
        seen: Set[str] = set()
        for idx, cell in enumerate(cells):
            key = self.canon(cell)
            if key is None:
                continue
            # Keep the first date/amount/balance column; descriptions concatenate
            if key in seen and key != "description":
                continue
            mapping[idx] = key
            seen.add(key)
        return mapping

    def is_header(self, mapping: Dict[int, str]) -> bool:
        vals = set(mapping.values())
        return "date" in vals and bool(vals & {"amount", "debit", "credit"})

    def supports(self, fingerprint: Dict[str, object]) -> bool:
        for cells in fingerprint.get("header_rows") or []:
            if self.is_header(self.header_mapping(list(cells))):
                return True
        return False

    def parse(self, lines: List[str]) -> List[RawRow]:
        result: List[RawRow] = []
        mapping: Dict[int, str] = {}
        for line in lines:
            if line.startswith(SHEET_MARKER):
                mapping = {}
                continue
            cells = split_cells(line)
            if len(cells) >= 2:
                candidate = self.header_mapping(cells)
                if self.is_header(candidate) and not DATE_TOKEN.search(line):
                    mapping = candidate
                    continue
            if not mapping:
                continue
            row: RawRow = {"line": line}
            for idx, key in mapping.items():
                if idx >= len(cells):
                    continue
                val = cells[idx] or None
                if key == "description":
                    row["description"] = " ".join(x for x in (row.get("description"), val) if x) or None
                else:
                    row[key] = val
            if row.get("date") or row.get("description"):
                result.append(row)
        return result


class HipotecarioTableParser(TableParser):
    name = "HIPOTECARIO_TABLE"
    institution = "hipotecario"

    header_synonyms = {
        "date": {"fecha"},
        "description": {"descripcion"},
        "reference": {"referencia"},
        "debit": {"debito en $", "debito"},
        "credit": {"credito en $", "credito"},
        "balance": {"saldo", "saldo en $"},
    }
    ignored = {"sucursal"}

    def supports(self, fingerprint: Dict[str, object]) -> bool:
        for cells in fingerprint.get("header_rows") or []:
            folded = [fold(c) for c in cells]
            if any("debito en" in c for c in folded) and any("credito en" in c for c in folded):
                return True
        return False


class SantanderTableParser(TableParser):
    name = "SANTANDER_TABLE"
    institution = "santander"

    header_synonyms = {
        "date": {"fecha"},
        "description": {"concepto"},
        "reference": {"referencia", "cod. operativo"},
        "amount": {"importe", "importe pesos", "importe (pesos)"},
        "balance": {"saldo", "saldo pesos", "saldo (pesos)"},
    }
    ignored = {"suc. origen", "desc. sucursal"}

    def supports(self, fingerprint: Dict[str, object]) -> bool:
        for cells in fingerprint.get("header_rows") or []:
            folded = [fold(c) for c in cells]
            has_importe = any("importe" in c for c in folded)
            has_saldo = any("saldo" in c for c in folded)
            has_concept = any("concepto" in c or "cod. operativo" in c for c in folded)
            if has_importe and has_saldo and has_concept:
                return True
        return False


# --- Free text (PDF text layer) ---


class BrubankTextParser(StatementParser):
    name = "BRUBANK_TEXT"
    institution = "brubank"

    _reverso = re.compile(r"^(\d{2}/\d{2}/\d{4})\s+(\d+)\s+Reverso\s*-?\s*(.+?)\s+(-?\$?\s*[\d.,]*\d)$", re.IGNORECASE)
    _movement = re.compile(r"^(\d{2}/\d{2}/\d{4})\s+(\d+)\s+(.+?)\s+(-?\$?\s*[\d.,]*\d)$")

    def supports(self, fingerprint: Dict[str, object]) -> bool:
        return fingerprint.get("institution") == "brubank"

    def parse(self, lines: List[str]) -> List[RawRow]:
        result: List[RawRow] = []
        for raw in lines:
            line = raw.strip()
            m = self._reverso.match(line)
            if m:
                date, ref, desc, amount = m.groups()
                # Reversals always leave the account
                result.append({"date": date, "reference": ref, "description": f"Reverso - {desc.strip()}", "amount": amount, "direction": "expense", "line": line})
                continue
            m = self._movement.match(line)
            if m:
                date, ref, desc, amount = m.groups()
                result.append({"date": date, "reference": ref, "description": desc.strip(), "amount": amount, "line": line})
        return result


def _trailing_amounts(rest: str) -> tuple[Optional[str], Optional[str], str]:
    """Split '<description> <amount> [<balance>]' from the right."""
    tokens = list(MONEY_TOKEN.finditer(rest))
    if not tokens:
        return None, None, rest
    last = tokens[-1]
    if rest[last.end():].strip():
        return None, None, rest
    if len(tokens) >= 2:
        prev = tokens[-2]
        if not rest[prev.end():last.start()].strip():
            return prev.group(1), last.group(1), rest[: prev.start()].strip()
    return last.group(1), None, rest[: last.start()].strip()


class SantanderTextParser(StatementParser):
    name = "SANTANDER_TEXT"
    institution = "santander"

    _date_start = re.compile(r"^(\d{2}/\d{2}/\d{2,4})\s+(.*)$")
    _skip = ("fecha", "periodo", "desde", "hasta")

    def supports(self, fingerprint: Dict[str, object]) -> bool:
        return fingerprint.get("institution") == "santander"

    def parse(self, lines: List[str]) -> List[RawRow]:
        result: List[RawRow] = []
        for raw in lines:
            line = raw.strip()
            if len(line) < 10:
                continue
            m = self._date_start.match(line)
            if not m:
                continue
            date, rest = m.groups()
            if any(word in fold(rest) for word in self._skip):
                continue
            amount, balance, desc = _trailing_amounts(rest)
            if amount and len(desc) > 2:
                result.append({"date": date, "description": desc, "amount": amount, "balance": balance, "line": line})
        return result


class GenericTextParser(StatementParser):
    name = "GENERIC_TEXT"
    template = False

    def supports(self, fingerprint: Dict[str, object]) -> bool:
        return True

    def parse(self, lines: List[str]) -> List[RawRow]:
        result: List[RawRow] = []
        for raw in lines:
            line = raw.replace(CELL_SEPARATOR, " ").strip()
            if len(line) < 10 or line.startswith(SHEET_MARKER):
                continue
            dm = DATE_TOKEN.search(line)
            if not dm:
                continue
            rest = (line[: dm.start()] + " " + line[dm.end():]).strip()
            amount, balance, desc = _trailing_amounts(rest)
            if amount is None:
                tokens = MONEY_TOKEN.findall(rest)
                if not tokens:
                    continue
                amount = tokens[-1]
                desc = rest.replace(amount, "").strip()
            desc = re.sub(r"\s+", " ", desc)
            if len(desc) < 3:
                continue
            result.append({"date": dm.group(1), "description": desc, "amount": amount, "balance": balance, "line": line})
        return result


def default_registry() -> ParserRegistry:
    return ParserRegistry(
        parsers=[
            HipotecarioTableParser(),
            SantanderTableParser(),
            TableParser(),
            BrubankTextParser(),
            SantanderTextParser(),
            GenericTextParser(),
        ]
    )

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Union


class AmountParseError(ValueError):
    pass


class DateParseError(ValueError):
    pass


_CURRENCY_TOKENS = re.compile(r"(U\$S|US\$|U\$D|USD|ARS|EUR|BRL|\$|€|£)", re.IGNORECASE)
_NUMERIC = re.compile(r"^[\d.,]+$")

# Day-first: statements here are Argentine/European
_DATE_FORMATS = [
    "%Y-%m-%d", "%Y/%m/%d",
    "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y",
    "%d/%m/%y", "%d-%m-%y", "%d.%m.%y",
    "%d %b %Y", "%d-%b-%Y", "%b %d %Y", "%b %d, %Y",
]

_EXCEL_EPOCH = date(1899, 12, 30)
# 1970-01-01 as an Excel serial; anything smaller is more likely an amount or a count
_EXCEL_MIN_SERIAL = 25569
_EXCEL_MAX_SERIAL = 2958465


def parse_amount(raw: Union[str, int, float, Decimal, None]) -> Decimal:
    """
    Parse a locale-formatted money string into a signed Decimal.

    "-1.332,00" -> -1332.00, "$ 2.220,00" -> 2220.00, "(45,10)" -> -45.10,
    "1,234.56" -> 1234.56, "150,00-" -> -150.00.

    When both separators appear the last one is the decimal mark. A lone
    separator followed by exactly three digits is a thousands separator.
    """
    if raw is None:
        raise AmountParseError("empty amount")
    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, (int, float)):
        return Decimal(str(raw))

    s = str(raw).strip().replace("\u00a0", " ")
    if not s:
        raise AmountParseError("empty amount")

    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative = True
        s = s[1:-1]
    s = _CURRENCY_TOKENS.sub("", s).replace(" ", "")
    if s.startswith("-"):
        negative = not negative
        s = s[1:]
    elif s.endswith("-"):
        negative = not negative
        s = s[:-1]
    s = s.lstrip("+")
    if s.startswith("(") and s.endswith(")"):
        negative = True
        s = s[1:-1]

    if not s or not _NUMERIC.match(s) or not any(ch.isdigit() for ch in s):
        raise AmountParseError(f"not a number: {raw!r}")

    last_dot = s.rfind(".")
    last_comma = s.rfind(",")
    if last_dot != -1 and last_comma != -1:
        if last_comma > last_dot:
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif last_comma != -1:
        if s.count(",") > 1 or len(s) - last_comma - 1 == 3:
            s = s.replace(",", "")
        else:
            s = s.replace(",", ".")
    elif last_dot != -1:
        if s.count(".") > 1 or (len(s) - last_dot - 1 == 3 and s[:last_dot] not in ("", "0")):
            s = s.replace(".", "")

    try:
        value = Decimal(s)
    except InvalidOperation as exc:
        raise AmountParseError(f"not a number: {raw!r}") from exc
    return -value if negative else value


def parse_date(raw: Union[str, int, float, date, None]) -> date:
    """Parse a statement date cell; raises DateParseError when nothing matches."""
    if raw is None:
        raise DateParseError("empty date")
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, (int, float)):
        return _from_excel_serial(float(raw))

    s = str(raw).strip()
    if not s:
        raise DateParseError("empty date")

    # ISO timestamps and spreadsheet datetime strings ("2024-01-15 00:00:00")
    iso = re.match(r"^(\d{4}-\d{2}-\d{2})[T ]\d{2}:\d{2}", s)
    if iso:
        s = iso.group(1)

    if re.fullmatch(r"\d+(\.\d+)?", s):
        return _from_excel_serial(float(s))

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    raise DateParseError(f"unrecognized date: {raw!r}")


def _from_excel_serial(serial: float) -> date:
    if not (_EXCEL_MIN_SERIAL < serial < _EXCEL_MAX_SERIAL):
        raise DateParseError(f"not an excel date serial: {serial}")
    return _EXCEL_EPOCH + timedelta(days=int(serial))


def try_parse_date(raw: Union[str, None]) -> Optional[date]:
    try:
        return parse_date(raw)
    except DateParseError:
        return None


_INSTALLMENT_NOISE = re.compile(r"\b(cuota|cta\.?)\s*\d{1,2}\s*(/|de)\s*\d{1,2}\b", re.IGNORECASE)
_REVERSAL_NOISE = re.compile(r"\breverso\b", re.IGNORECASE)


def extract_merchant(description: Optional[str]) -> Optional[str]:
    """Best-effort merchant name: drop installment and reversal markers, keep the first segment."""
    if not description:
        return None
    cleaned = _INSTALLMENT_NOISE.sub("", description)
    cleaned = _REVERSAL_NOISE.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip(" -*")
    cleaned = cleaned.split(" - ")[0].strip(" -*")
    return cleaned or None

from __future__ import annotations

from io import BytesIO, StringIO
from typing import Callable, Dict, List, Optional

import pandas as pd
import pdfplumber
from pypdf import PdfReader

from services.errors import UnreadableDocument, UnsupportedFormat
from services.json_logger import get_json_logger
from settings.config import settings


logger = get_json_logger("text_extractor")

CELL_SEPARATOR = " | "
SHEET_SEPARATOR = "=== Sheet: {name} ==="
DELIMITER_CANDIDATES = (",", ";", "\t")


def _check_pdf(content: bytes) -> None:
    """
    Reject encrypted or structurally broken PDFs before handing them to pdfplumber.
    """
    try:
        reader = PdfReader(BytesIO(content))
    except Exception as exc:
        raise UnreadableDocument(f"PDF could not be loaded: {exc}") from exc
    if getattr(reader, "is_encrypted", False):
        raise UnreadableDocument("PDF is encrypted")


def extract_pdf(content: bytes) -> str:
    _check_pdf(content)
    page_texts: List[str] = []
    try:
        with pdfplumber.open(BytesIO(content)) as pdf:
            pages = pdf.pages
            if len(pages) > settings.MAX_PDF_PAGES:
                logger.warning("pdf_pages_exceed_limit", extra={"extra": {"pages": len(pages), "max_pages": settings.MAX_PDF_PAGES}})
                pages = pages[: settings.MAX_PDF_PAGES]
            for page in pages:
                page_texts.append(page.extract_text() or "")
    except UnreadableDocument:
        raise
    except Exception as exc:
        raise UnreadableDocument(f"PDF text layer could not be read: {exc}") from exc

    text = "\n".join(t for t in page_texts if t.strip())
    if not text.strip():
        raise UnreadableDocument("PDF has no extractable text layer")
    return text


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def detect_delimiter(header_line: str) -> str:
    """Pick the candidate that splits the header row into the most columns (comma wins ties)."""
    best = DELIMITER_CANDIDATES[0]
    best_count = 1
    for candidate in DELIMITER_CANDIDATES:
        count = len(header_line.split(candidate))
        if count > best_count:
            best, best_count = candidate, count
    return best


def _serialize_frame(frame: pd.DataFrame) -> List[str]:
    lines: List[str] = []
    for row in frame.fillna("").itertuples(index=False):
        cells = [str(cell).strip() for cell in row]
        while cells and not cells[-1]:
            cells.pop()
        if any(cells):
            lines.append(CELL_SEPARATOR.join(cells))
    return lines


def extract_csv(content: bytes) -> str:
    decoded = _decode(content)
    lines = [line for line in decoded.splitlines() if line.strip()]
    if not lines:
        raise UnreadableDocument("CSV file is empty")
    delimiter = detect_delimiter(lines[0])
    width = max(len(line.split(delimiter)) for line in lines)
    try:
        frame = pd.read_csv(
            StringIO(decoded),
            sep=delimiter,
            header=None,
            names=list(range(width)),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
        )
    except Exception as exc:
        raise UnreadableDocument(f"CSV could not be parsed: {exc}") from exc
    logger.info("csv_parsed", extra={"extra": {"delimiter": delimiter, "rows": len(frame), "columns": width}})
    return "\n".join(_serialize_frame(frame))


def extract_spreadsheet(content: bytes) -> str:
    try:
        sheets: Dict[str, pd.DataFrame] = pd.read_excel(
            BytesIO(content), sheet_name=None, header=None, dtype=str, engine="openpyxl"
        )
    except Exception as exc:
        raise UnreadableDocument(f"Spreadsheet could not be read: {exc}") from exc
    out: List[str] = []
    for name, frame in sheets.items():
        out.append(SHEET_SEPARATOR.format(name=name))
        out.extend(_serialize_frame(frame))
    return "\n".join(out)


EXTRACTORS: Dict[str, Callable[[bytes], str]] = {
    "application/pdf": extract_pdf,
    "text/csv": extract_csv,
    "application/csv": extract_csv,
    "text/plain": extract_csv,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": extract_spreadsheet,
    "application/vnd.ms-excel": extract_spreadsheet,
}

EXTENSION_TYPES: Dict[str, str] = {
    ".pdf": "application/pdf",
    ".csv": "text/csv",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
}


def resolve_mime_type(mime_type: Optional[str], filename: Optional[str]) -> Optional[str]:
    if mime_type:
        normalized = mime_type.split(";")[0].strip().lower()
        if normalized in EXTRACTORS:
            return normalized
    if filename and "." in filename:
        ext = filename[filename.rfind("."):].lower()
        if ext in EXTENSION_TYPES:
            return EXTENSION_TYPES[ext]
    return None


def extract_text(content: bytes, mime_type: Optional[str], filename: Optional[str] = None) -> str:
    """
    Convert raw file bytes into plain text.

    Tabular rows come back as cells joined by " | ", one row per line; each
    spreadsheet sheet is preceded by a "=== Sheet: <name> ===" line.
    Raises UnsupportedFormat or UnreadableDocument.
    """
    resolved = resolve_mime_type(mime_type, filename)
    if resolved is None:
        raise UnsupportedFormat(mime_type, filename)
    return EXTRACTORS[resolved](content)

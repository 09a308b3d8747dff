"""Text extraction from uploaded files (TXT, MD, CSV, PDF, XLSX, XLS, DOCX)."""

from __future__ import annotations

import csv
import io
import logging
from io import BytesIO
from pathlib import Path

from app.core.errors import CorruptFile, EmptyContent, UnsupportedFormat

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".txt", ".md", ".csv", ".pdf", ".xlsx", ".xls", ".docx"}

# Declared MIME type → extension, used when the filename carries no usable suffix
_MIME_EXTENSIONS = {
    "text/plain": ".txt",
    "text/markdown": ".md",
    "text/csv": ".csv",
    "application/pdf": ".pdf",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
}


def resolve_extension(filename: str, content_type: str | None = None) -> str:
    """Return the supported extension for an upload, or raise UnsupportedFormat."""
    ext = Path(filename or "").suffix.lower()
    if ext in ALLOWED_EXTENSIONS:
        return ext
    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in _MIME_EXTENSIONS:
            return _MIME_EXTENSIONS[mime]
    shown = ext or content_type or "unknown"
    raise UnsupportedFormat(
        f"Unsupported file type: {shown}. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
    )


def extract_text(filename: str, content: bytes, content_type: str | None = None) -> str:
    """Extract plain text from file bytes based on the file extension.

    Args:
        filename: Original filename (used to determine type).
        content: Raw file bytes.
        content_type: Declared MIME type, consulted when the extension is unknown.

    Returns:
        Extracted text as a string.

    Raises:
        UnsupportedFormat: If neither extension nor MIME type is supported.
        CorruptFile: If the decoder cannot read the bytes.
        EmptyContent: If the document decodes to nothing but whitespace.
    """
    ext = resolve_extension(filename, content_type)

    if ext in {".txt", ".md"}:
        text = decode_text(content)
    elif ext == ".csv":
        text = _extract_csv(content)
    elif ext == ".pdf":
        text = _extract_pdf(content)
    elif ext == ".xlsx":
        text = _extract_xlsx(content)
    elif ext == ".xls":
        text = _extract_xls(content)
    else:
        text = _extract_docx(content)

    if not text.strip():
        raise EmptyContent(f"No text could be extracted from {filename or 'the file'}")
    return text


def decode_text(content: bytes) -> str:
    """UTF-8 (BOM tolerated), falling back to Latin-1 for legacy files."""
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def _extract_csv(content: bytes) -> str:
    reader = csv.reader(io.StringIO(decode_text(content)))
    try:
        rows = ["\t".join(cell.strip() for cell in row) for row in reader]
    except csv.Error as exc:
        raise CorruptFile(f"Could not parse CSV: {exc}") from exc
    return "\n".join(row for row in rows if row.strip())


def _extract_pdf(content: bytes) -> str:
    from pypdf import PdfReader

    try:
        reader = PdfReader(BytesIO(content))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as exc:
        logger.info("PDF decode failed: %s", exc)
        raise CorruptFile("The PDF file is corrupt or cannot be read") from exc
    return "\n".join(pages)


def _sheet_block(title: str, rows) -> list[str]:
    """Header plus tab-joined non-empty rows; nothing for a blank sheet."""
    lines = []
    for row in rows:
        cells = [str(v) for v in row if v is not None and str(v).strip()]
        if cells:
            lines.append("\t".join(cells))
    if not lines:
        return []
    return [f"=== Sheet: {title} ===", *lines, ""]


def _extract_xlsx(content: bytes) -> str:
    from openpyxl import load_workbook

    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        logger.info("XLSX decode failed: %s", exc)
        raise CorruptFile("The Excel file is corrupt or cannot be read") from exc

    parts: list[str] = []
    # Read-only sheets parse lazily, so broken XML surfaces while iterating
    try:
        for sheet in workbook.worksheets:
            parts.extend(_sheet_block(sheet.title, sheet.iter_rows(values_only=True)))
    except Exception as exc:
        logger.info("XLSX sheet read failed: %s", exc)
        raise CorruptFile("The Excel file is corrupt or cannot be read") from exc
    finally:
        workbook.close()
    return "\n".join(parts)


def _extract_xls(content: bytes) -> str:
    import xlrd

    try:
        book = xlrd.open_workbook(file_contents=content)
    except Exception as exc:
        logger.info("XLS decode failed: %s", exc)
        raise CorruptFile("The Excel file is corrupt or cannot be read") from exc

    parts: list[str] = []
    for sheet in book.sheets():
        rows = (sheet.row_values(r) for r in range(sheet.nrows))
        parts.extend(_sheet_block(sheet.name, rows))
    return "\n".join(parts)


def _extract_docx(content: bytes) -> str:
    from docx import Document

    try:
        doc = Document(BytesIO(content))
    except Exception as exc:
        logger.info("DOCX decode failed: %s", exc)
        raise CorruptFile("The Word document is corrupt or cannot be read") from exc

    lines = [p.text for p in doc.paragraphs]
    for table in doc.tables:
        for row in table.rows:
            lines.append("\t".join(cell.text.strip() for cell in row.cells))
    return "\n".join(lines)

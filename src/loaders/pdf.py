from __future__ import annotations

"""Page-aware PDF text extraction and cleanup."""

import re

from src.loaders.chunking import normalize_text
from src.rag.types import PageText


class PDFLoaderError(RuntimeError):
    """Raised when PDF loading fails."""
    pass


_HYPHEN_BREAK_RE = re.compile(r"(\w)-\n(\w)")


def _clean_pdf_text(text: str) -> str:
    """Join hyphenated line breaks and collapse whitespace."""
    if not text:
        return ""
    cleaned = _HYPHEN_BREAK_RE.sub(r"\1\2", text.replace("\r\n", "\n"))
    return normalize_text(cleaned.replace("\x00", ""))


def load_pdf_pages(data: bytes) -> list[PageText]:
    """Extract text per page (1-based page numbers), skipping blank pages."""
    try:
        import fitz
    except ImportError as exc:
        raise PDFLoaderError("PyMuPDF is required to load PDF files") from exc

    try:
        reader = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise PDFLoaderError(f"Unreadable PDF: {exc}") from exc
    pages: list[PageText] = []
    with reader:
        for page_num, page in enumerate(reader, start=1):
            text = _clean_pdf_text(page.get_text() or "")
            if text:
                pages.append(PageText(page_num=page_num, text=text))
    return pages

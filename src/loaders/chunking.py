from __future__ import annotations

"""Text normalization and overlapping character chunking (plain and page-aware)."""

import hashlib
import logging
import re
from typing import Iterable

from src.rag.types import Chunk, PageText

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_CHUNK_SIZE = 800
DEFAULT_CHUNK_OVERLAP = 160
DEFAULT_WORD_BREAK_RATIO = 0.5


class ChunkingError(ValueError):
    """Raised when chunking options are invalid."""
    pass


def normalize_text(text: str) -> str:
    """Normalize whitespace and line endings in text."""
    return _WHITESPACE_RE.sub(" ", text.replace("\r\n", "\n")).strip()


def content_hash(text: str) -> str:
    """Return a short content-addressed identifier for de-duplication."""
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()[:16]


def _validate_options(chunk_size: int, chunk_overlap: int, word_break_ratio: float) -> None:
    if chunk_size <= 0:
        raise ChunkingError("chunk_size must be positive")
    if chunk_overlap < 0:
        raise ChunkingError("chunk_overlap must be non-negative")
    if chunk_overlap >= chunk_size:
        raise ChunkingError("chunk_overlap must be smaller than chunk_size")
    if not 0.0 <= word_break_ratio < 1.0:
        raise ChunkingError("word_break_ratio must be in [0, 1)")


def _split_windows(
    text: str,
    chunk_size: int,
    chunk_overlap: int,
    word_break_ratio: float,
) -> list[str]:
    """Slide a fixed window over text, backing off to a word boundary when it is late enough."""
    cleaned = text.strip()
    if not cleaned:
        return []
    if len(cleaned) <= chunk_size:
        return [cleaned]

    windows: list[str] = []
    start = 0
    length = len(cleaned)
    min_break = chunk_size * word_break_ratio
    while start < length:
        end = min(length, start + chunk_size)
        window = cleaned[start:end]
        if end < length:
            last_space = window.rfind(" ")
            # the step forward must stay positive after backing off
            if last_space > min_break and last_space > chunk_overlap:
                window = window[:last_space]
        piece = window.strip()
        if piece:
            windows.append(piece)
        if end >= length:
            break
        start += len(window) - chunk_overlap
    return windows


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    word_break_ratio: float = DEFAULT_WORD_BREAK_RATIO,
) -> list[Chunk]:
    """Split text into overlapping chunks of at most ``chunk_size`` characters."""
    _validate_options(chunk_size, chunk_overlap, word_break_ratio)
    windows = _split_windows(text, chunk_size, chunk_overlap, word_break_ratio)
    chunks = [
        Chunk(text=window, order=order, content_hash=content_hash(window))
        for order, window in enumerate(windows)
    ]
    logger.debug("chunking_complete", extra={"chunks": len(chunks), "text_length": len(text)})
    return chunks


def chunk_pages(
    pages: Iterable[PageText],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    word_break_ratio: float = DEFAULT_WORD_BREAK_RATIO,
) -> list[Chunk]:
    """Chunk each page independently, numbering chunks across the whole document."""
    _validate_options(chunk_size, chunk_overlap, word_break_ratio)
    chunks: list[Chunk] = []
    order = 0
    for page in pages:
        for window in _split_windows(page.text, chunk_size, chunk_overlap, word_break_ratio):
            chunks.append(
                Chunk(
                    text=window,
                    order=order,
                    content_hash=content_hash(window),
                    page=page.page_num,
                )
            )
            order += 1
    logger.debug("page_chunking_complete", extra={"chunks": len(chunks)})
    return chunks

from __future__ import annotations

"""Markdown loader for ingestion."""

import re

from src.loaders.text import load_text_bytes

_FRONT_MATTER_RE = re.compile(r"\A---\n.*?\n---\n", re.S)
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")


def load_markdown_bytes(data: bytes) -> str:
    """Decode Markdown, keeping headings and prose but dropping link targets."""
    text = load_text_bytes(data)
    text = _FRONT_MATTER_RE.sub("", text)
    text = _IMAGE_RE.sub(r"\1", text)
    return _LINK_RE.sub(r"\1", text)

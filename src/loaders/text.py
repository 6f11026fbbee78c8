from __future__ import annotations

"""Plain text loader for ingestion."""


def load_text_bytes(data: bytes) -> str:
    """Decode uploaded text, dropping a UTF-8 byte order mark."""
    return data.decode("utf-8-sig", errors="ignore").replace("\r\n", "\n")

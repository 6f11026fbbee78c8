from __future__ import annotations

"""Shared pytest fixtures and test environment defaults."""

import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("RAG_METADATA_DB_URI", None)
os.environ.pop("RAG_OBJECT_STORE_BUCKET", None)
os.environ["RAG_VECTORSTORE"] = "memory"
os.environ["EMBEDDING_PROVIDER"] = "hash"
os.environ["EMBEDDING_DIMENSION"] = "256"
os.environ["RAG_LLM_PROVIDER"] = "extractive"
os.environ.setdefault("RAG_EMBEDDING_RETRY_DELAY", "0")
os.environ.setdefault("RAG_FILE_MAX_BYTES", "65536")
os.environ.setdefault("RAG_RATE_LIMIT_MAX_TOKENS", "100")

import pytest


@pytest.fixture
def anyio_backend() -> str:
    # The service is built on asyncio (asyncio.to_thread/wait_for/gather).
    return "asyncio"

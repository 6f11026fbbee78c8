from __future__ import annotations

"""Document metadata persistence for uploaded files."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class DocumentStoreError(RuntimeError):
    """Raised when metadata persistence fails."""
    pass


@dataclass(frozen=True)
class DocumentMeta:
    """Metadata tracked for a single uploaded document."""
    id: str
    tenant_id: str
    user_id: str
    name: str
    mime: str
    size: int
    storage_path: str | None = None
    chunk_count: int = 0
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "name": self.name,
            "mime": self.mime,
            "size": self.size,
            "storagePath": self.storage_path,
            "chunkCount": self.chunk_count,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def new_document_id() -> str:
    return uuid.uuid4().hex


def _is_memory_sqlite(uri: str) -> bool:
    return uri in {"sqlite://", "sqlite:///:memory:"}


class MetadataStore:
    """Store document metadata in a SQL database."""
    def __init__(self, connection_uri: str) -> None:
        """Initialize the metadata store and ensure tables exist."""
        if _is_memory_sqlite(connection_uri):
            # one shared connection keeps the in-memory database alive across threads
            self._engine = create_engine(
                connection_uri,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self._engine = create_engine(connection_uri)
        self._metadata = MetaData()
        self._table = Table(
            "documents",
            self._metadata,
            Column("id", String(64), primary_key=True),
            Column("tenant_id", String(255), nullable=False, index=True),
            Column("user_id", String(255), nullable=False),
            Column("name", String(512), nullable=False),
            Column("mime", String(128), nullable=False),
            Column("size", Integer, nullable=False),
            Column("storage_path", Text, nullable=True),
            Column("chunk_count", Integer, nullable=False, default=0),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )
        self._metadata.create_all(self._engine)

    def save_document_meta(self, meta: DocumentMeta) -> DocumentMeta:
        created_at = meta.created_at or datetime.now(timezone.utc)
        row = {
            "id": meta.id,
            "tenant_id": meta.tenant_id,
            "user_id": meta.user_id,
            "name": meta.name,
            "mime": meta.mime,
            "size": meta.size,
            "storage_path": meta.storage_path,
            "chunk_count": meta.chunk_count,
            "created_at": created_at,
        }
        try:
            with self._engine.begin() as conn:
                conn.execute(self._table.insert().values(**row))
        except SQLAlchemyError as exc:
            logger.error("document_meta_save_failed", extra={"document_id": meta.id})
            raise DocumentStoreError(f"Failed to save document {meta.id}") from exc
        return DocumentMeta(**row)

    def get_document_meta(self, document_id: str, tenant_id: str) -> DocumentMeta | None:
        """Return the document only when it belongs to ``tenant_id``."""
        query = self._table.select().where(
            (self._table.c.id == document_id) & (self._table.c.tenant_id == tenant_id)
        )
        try:
            with self._engine.connect() as conn:
                row = conn.execute(query).mappings().first()
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"Failed to read document {document_id}") from exc
        if row is None:
            return None
        return DocumentMeta(**dict(row))

    def update_chunk_count(self, document_id: str, chunk_count: int) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    self._table.update()
                    .where(self._table.c.id == document_id)
                    .values(chunk_count=chunk_count)
                )
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"Failed to update document {document_id}") from exc

    def delete_document_meta(self, document_id: str, tenant_id: str) -> bool:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    self._table.delete().where(
                        (self._table.c.id == document_id)
                        & (self._table.c.tenant_id == tenant_id)
                    )
                )
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"Failed to delete document {document_id}") from exc
        return bool(result.rowcount)

    def count_documents(self, tenant_id: str | None = None) -> int:
        query = select(func.count()).select_from(self._table)
        if tenant_id is not None:
            query = query.where(self._table.c.tenant_id == tenant_id)
        try:
            with self._engine.connect() as conn:
                return int(conn.execute(query).scalar_one())
        except SQLAlchemyError as exc:
            raise DocumentStoreError("Failed to count documents") from exc

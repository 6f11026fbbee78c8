from __future__ import annotations

"""FastAPI application entrypoint for the tenant-scoped hybrid RAG service."""

import hashlib
import logging
import time
import uuid
from pathlib import Path

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.app.dependencies import (
    get_completion_provider,
    get_embedding_config_report,
    get_metadata_store,
    get_object_store,
    get_output_policy,
    get_pipeline,
)
from src.app.metrics import metrics_middleware, metrics_response
from src.app.schemas import (
    AnswerMeta,
    AnswerResponse,
    AnswerSource,
    DeleteDocumentResponse,
    DocumentResponse,
    EmbeddingHealthResponse,
    SearchItem,
    SearchResponse,
    StatsHealthResponse,
    StatsResponse,
    UploadResponse,
    normalize_answer_body,
)
from src.app.settings import settings
from src.loaders.markdown import load_markdown_bytes
from src.loaders.object_store import ObjectStoreError, build_storage_path
from src.loaders.pdf import PDFLoaderError, load_pdf_pages
from src.loaders.text import load_text_bytes
from src.metadata.store import DocumentMeta, DocumentStoreError, new_document_id
from src.rag.citations import split_sections
from src.rag.embeddings import EmbeddingConfigError
from src.rag.context import estimate_tokens
from src.rag.guardrails import DEFAULT_REFUSAL, require_context, validate_output
from src.rag.injection import sanitize_snippet, validate_sources_for_injection
from src.rag.llm import Completion, LLMError, base_system_prompt, build_user_prompt
from src.rag.pipeline import RetrievalError, RetrievalValidationError
from src.rag.ratelimit import RateLimitExceeded
from src.rag.types import PackedContext, PageText, Source

logger = logging.getLogger(__name__)

app = FastAPI(title="Hybrid RAG Service", version="0.1.0")

SUPPORTED_TYPES = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
}
_MIME_SUFFIXES = {
    "application/pdf": ".pdf",
    "text/plain": ".txt",
    "text/markdown": ".md",
    "text/x-markdown": ".md",
}


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def _safe_error_message(exc: Exception) -> str:
    """Return a safe error type name for logs and responses."""
    return type(exc).__name__


def _query_hash(query: str) -> str:
    return hashlib.sha256(query.encode("utf-8")).hexdigest()


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _error(exc.status_code, message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
    return _error(400, f"Invalid request: {', '.join(fields) or 'malformed input'}")


async def _read_upload_bytes(upload: UploadFile, max_bytes: int | None) -> bytes:
    """Stream upload bytes with a hard size limit."""
    if not max_bytes or max_bytes <= 0:
        return await upload.read()
    buffer = bytearray()
    while True:
        chunk = await upload.read(65536)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise HTTPException(
                status_code=400,
                detail=f"File exceeds maximum size of {max_bytes} bytes",
            )
    return bytes(buffer)


def _resolve_suffix(filename: str, content_type: str | None) -> str | None:
    suffix = Path(filename).suffix.lower()
    if suffix in SUPPORTED_TYPES:
        return suffix
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    return _MIME_SUFFIXES.get(mime)


def _extract(data: bytes, suffix: str) -> tuple[str | None, list[PageText] | None]:
    if suffix == ".pdf":
        return None, load_pdf_pages(data)
    if suffix in {".md", ".markdown"}:
        return load_markdown_bytes(data), None
    return load_text_bytes(data), None


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health")
async def health() -> dict[str, str]:
    """Liveness endpoint for uptime checks."""
    return {"status": "ok"}


@app.get("/stats", response_model=StatsResponse)
async def stats() -> StatsResponse:
    """Return index stats."""
    pipeline = get_pipeline()
    payload = dict(pipeline.stats())
    try:
        payload["document_count"] = get_metadata_store().count_documents()
    except DocumentStoreError as exc:
        logger.error("stats_document_count_failed", extra={"error": _safe_error_message(exc)})
        payload["document_count"] = None
    return StatsResponse(**payload)


@app.get("/stats/health", response_model=StatsHealthResponse)
async def stats_health() -> StatsHealthResponse:
    """Return index health status."""
    pipeline = get_pipeline()
    return StatsHealthResponse(**pipeline.health())


@app.get("/stats/embedding", response_model=EmbeddingHealthResponse)
async def embedding_health() -> EmbeddingHealthResponse:
    """Return embedding configuration health checks."""
    report = get_embedding_config_report()
    return EmbeddingHealthResponse(**report.__dict__)


@app.post("/upload", response_model=UploadResponse, response_model_by_alias=True)
async def upload(
    http_request: Request,
    file: UploadFile | None = File(default=None),
    tenant_id: str | None = Form(default=None, alias="tenantId"),
    user_id: str | None = Form(default=None, alias="userId"),
):
    """Extract, store, chunk, embed and index one uploaded document."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    if file is None:
        return _error(400, "No file provided")
    if not tenant_id or not tenant_id.strip() or not user_id or not user_id.strip():
        return _error(400, "tenantId and userId are required")
    filename = file.filename or "upload"
    suffix = _resolve_suffix(filename, file.content_type)
    if suffix is None:
        return _error(400, "Unsupported file type. Only PDF, TXT and MD files are allowed")

    data = await _read_upload_bytes(file, settings.file_max_bytes)
    try:
        text, pages = _extract(data, suffix)
    except PDFLoaderError as exc:
        logger.warning(
            "upload_extract_failed",
            extra={"request_id": request_id, "source_name": filename, "error": str(exc)},
        )
        return _error(400, "Could not extract text from the file")
    if not pages and not (text and text.strip()):
        return _error(400, "No text content found in the file")

    doc_id = new_document_id()
    mime = SUPPORTED_TYPES[suffix]
    store = get_metadata_store()
    object_store = get_object_store()
    try:
        storage_path = None
        if object_store is not None:
            storage_path = build_storage_path(tenant_id, filename, int(time.time() * 1000))
            object_store.put_object(storage_path, data, mime)
        store.save_document_meta(
            DocumentMeta(
                id=doc_id,
                tenant_id=tenant_id,
                user_id=user_id,
                name=filename,
                mime=mime,
                size=len(data),
                storage_path=storage_path,
            )
        )
        pipeline = get_pipeline()
        result = await pipeline.ingest_document(
            tenant_id=tenant_id,
            document_id=doc_id,
            document_name=filename,
            text=text,
            pages=pages,
        )
        store.update_chunk_count(doc_id, result.chunks)
    except (
        ObjectStoreError,
        DocumentStoreError,
        RetrievalError,
        EmbeddingConfigError,
    ) as exc:
        logger.error(
            "upload_failed",
            extra={
                "request_id": request_id,
                "tenant_id": tenant_id,
                "document_id": doc_id,
                "error": _safe_error_message(exc),
            },
        )
        return _error(500, "Failed to process document")

    logger.info(
        "upload_complete",
        extra={
            "request_id": request_id,
            "tenant_id": tenant_id,
            "document_id": doc_id,
            "chunks": result.chunks,
        },
    )
    return UploadResponse(
        doc_id=doc_id,
        chunks=result.chunks,
        message=f"Successfully processed {filename}",
    )


@app.get("/search", response_model=SearchResponse)
async def search(
    http_request: Request,
    tenant_id: str | None = Query(default=None, alias="tenantId"),
    q: str | None = Query(default=None),
    top_k: int | None = Query(default=None, alias="topK"),
):
    """Run hybrid retrieval and return ranked chunks with packed context."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    if not tenant_id or not tenant_id.strip():
        return _error(400, "tenantId is required")
    if not q or not q.strip():
        return _error(400, "Query parameter 'q' is required")
    try:
        pipeline = get_pipeline()
        if top_k is None:
            top_k = settings.top_k
        result = await pipeline.retrieve(tenant_id, q, top_k=top_k)
    except RetrievalValidationError as exc:
        return _error(400, str(exc))
    except RateLimitExceeded:
        return _error(429, "Rate limit exceeded")
    except (RetrievalError, EmbeddingConfigError) as exc:
        logger.error(
            "search_failed",
            extra={
                "request_id": request_id,
                "tenant_id": tenant_id,
                "query_hash": _query_hash(q),
                "error": _safe_error_message(exc),
            },
        )
        return _error(500, "Search failed")

    items = [SearchItem(**chunk.to_dict()) for chunk in result.chunks]
    return SearchResponse(
        items=items,
        count=len(items),
        context=result.context.context,
        citations=[citation.to_dict() for citation in result.context.citations],
        stats=result.stats,
        issues=[issue.to_dict() for issue in result.issues],
    )


@app.post("/answer", response_model=AnswerResponse, response_model_by_alias=True)
async def answer(http_request: Request):
    """Retrieve context, generate a cited answer and run output policies on it."""
    request_id = getattr(http_request.state, "request_id", str(uuid.uuid4()))
    start = time.monotonic()
    try:
        body = await http_request.json()
    except ValueError:
        return _error(400, "Request body must be valid JSON")
    try:
        request = normalize_answer_body(body)
    except ValidationError as exc:
        fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        return _error(400, f"Invalid request: {', '.join(fields)}")
    except ValueError as exc:
        return _error(400, str(exc))

    web_sources = [
        Source(
            type="web",
            snippet=sanitize_snippet(web.snippet, settings.snippet_max_chars),
            title=web.title,
            url=web.url,
            published_at=web.published_at,
        )
        for web in request.web_sources
    ]
    retrieval_issues = validate_sources_for_injection(
        [Source(type="web", snippet=web.snippet, url=web.url) for web in request.web_sources]
    )
    packed = PackedContext(context="", citations=[], token_count=0, chunks_used=0, chunks_truncated=0)
    try:
        if request.requires_retrieval:
            result = await get_pipeline().retrieve(
                request.tenant_id,
                request.input,
                top_k=request.top_k,
                max_tokens=request.max_tokens,
            )
            packed = result.context
            retrieval_issues.extend(result.issues)
            gate = require_context(result.chunks)
        if request.requires_retrieval and not gate.allowed and not web_sources:
            logger.info(
                "answer_refused_no_context",
                extra={"request_id": request_id, "tenant_id": request.tenant_id, "reason": gate.reason},
            )
            completion = Completion(
                text=DEFAULT_REFUSAL, tokens_in=0, tokens_out=estimate_tokens(DEFAULT_REFUSAL)
            )
        else:
            completion = await get_completion_provider().complete(
                base_system_prompt(),
                build_user_prompt(request.input, packed, web_sources),
                settings.llm_max_tokens,
            )
    except RetrievalValidationError as exc:
        return _error(400, str(exc))
    except RateLimitExceeded:
        return _error(429, "Rate limit exceeded")
    except (RetrievalError, LLMError, EmbeddingConfigError) as exc:
        logger.error(
            "answer_failed",
            extra={
                "request_id": request_id,
                "tenant_id": request.tenant_id,
                "query_hash": _query_hash(request.input),
                "error": _safe_error_message(exc),
            },
        )
        return _error(500, "Answer generation failed")

    sections = split_sections(completion.text)
    sources = [
        Source(
            type="rag",
            snippet=sanitize_snippet(citation.excerpt or "", settings.snippet_max_chars),
            title=citation.source,
        )
        for citation in packed.citations
    ] + web_sources
    grounding_text = "\n".join([packed.context, *(source.snippet for source in web_sources)])
    policy = validate_output(
        completion.text,
        sections,
        sources,
        get_output_policy(request.required_sections),
        grounding_text=grounding_text,
    )
    issues = [issue.to_dict() for issue in [*retrieval_issues, *policy.issues]]
    latency_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "answer_complete",
        extra={
            "request_id": request_id,
            "tenant_id": request.tenant_id,
            "sources": len(sources),
            "issues": len(issues),
            "valid": policy.valid,
            "latency_ms": latency_ms,
        },
    )
    return AnswerResponse(
        answer=completion.text,
        sections=sections,
        sources=[
            AnswerSource(
                type=source.type,
                snippet=source.snippet,
                title=source.title,
                url=source.url,
                published_at=source.published_at,
            )
            for source in sources
        ],
        citations=[citation.to_dict() for citation in packed.citations],
        issues=issues,
        valid=policy.valid,
        disclaimer=policy.disclaimer,
        meta=AnswerMeta(
            tokens_in=completion.tokens_in,
            tokens_out=completion.tokens_out,
            latency_ms=latency_ms,
        ),
    )


@app.get("/documents/{doc_id}", response_model=DocumentResponse)
async def get_document(doc_id: str, tenant_id: str | None = Query(default=None, alias="tenantId")):
    """Return document metadata when it belongs to the tenant."""
    if not tenant_id:
        return _error(400, "tenantId is required")
    try:
        meta = get_metadata_store().get_document_meta(doc_id, tenant_id)
    except DocumentStoreError:
        return _error(500, "Failed to read document")
    if meta is None:
        return _error(404, "Document not found")
    return DocumentResponse(document=meta.to_dict())


@app.delete(
    "/documents/{doc_id}", response_model=DeleteDocumentResponse, response_model_by_alias=True
)
async def delete_document(
    doc_id: str, tenant_id: str | None = Query(default=None, alias="tenantId")
):
    """Remove a document's chunks, stored file and metadata."""
    if not tenant_id:
        return _error(400, "tenantId is required")
    store = get_metadata_store()
    try:
        meta = store.get_document_meta(doc_id, tenant_id)
        if meta is None:
            return _error(404, "Document not found")
        removed = await get_pipeline().delete_document(tenant_id, doc_id)
        object_store = get_object_store()
        if object_store is not None and meta.storage_path:
            object_store.delete_object(meta.storage_path)
        store.delete_document_meta(doc_id, tenant_id)
    except (DocumentStoreError, RetrievalError, ObjectStoreError) as exc:
        logger.error(
            "document_delete_failed",
            extra={"tenant_id": tenant_id, "document_id": doc_id, "error": _safe_error_message(exc)},
        )
        return _error(500, "Failed to delete document")
    logger.info(
        "document_deleted",
        extra={"tenant_id": tenant_id, "document_id": doc_id, "chunks": removed},
    )
    return DeleteDocumentResponse(doc_id=doc_id, deleted_chunks=removed)

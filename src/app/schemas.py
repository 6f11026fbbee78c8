from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UploadResponse(_CamelModel):
    ok: bool = True
    doc_id: str = Field(alias="docId")
    chunks: int
    message: str


class SearchItem(_CamelModel):
    id: str
    content: str
    metadata: dict[str, Any]
    score: float
    rank: int


class SearchResponse(_CamelModel):
    ok: bool = True
    items: list[SearchItem]
    count: int
    context: str
    citations: list[dict[str, Any]]
    stats: dict[str, Any]
    issues: list[dict[str, Any]] = Field(default_factory=list)


class WebSourceBody(_CamelModel):
    """Web search hit supplied by the caller; cited as ``[W1]``, ``[W2]``, ..."""
    title: str | None = None
    url: str | None = None
    snippet: str = ""
    published_at: datetime | None = Field(default=None, alias="publishedAt")


class FlatAnswerBody(_CamelModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)
    user_id: str | None = Field(default=None, alias="userId")
    input: str = Field(min_length=1)
    top_k: int | None = Field(default=None, alias="topK", ge=1, le=50)
    max_tokens: int | None = Field(default=None, alias="maxTokens", ge=1)
    required_sections: list[str] = Field(default_factory=list, alias="requiredSections")
    web_sources: list[WebSourceBody] = Field(default_factory=list, alias="webSources")


class LegacyPlan(_CamelModel):
    requires_retrieval: bool = True
    sections: list[str] = Field(default_factory=list)
    query_terms: list[str] = Field(default_factory=list)


class LegacyRequest(_CamelModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)
    user_id: str | None = Field(default=None, alias="userId")
    input: str = Field(min_length=1)
    web_sources: list[WebSourceBody] = Field(default_factory=list, alias="webSources")


class LegacyAnswerBody(_CamelModel):
    plan: LegacyPlan
    request: LegacyRequest


class AnswerRequest(BaseModel):
    """Canonical answer request after both body shapes are normalized."""
    tenant_id: str
    user_id: str | None = None
    input: str
    top_k: int | None = None
    max_tokens: int | None = None
    required_sections: list[str] = Field(default_factory=list)
    requires_retrieval: bool = True
    web_sources: list[WebSourceBody] = Field(default_factory=list)


def normalize_answer_body(body: Any) -> AnswerRequest:
    """Accept the flat body or the legacy ``{plan, request}`` body.

    Raises ``pydantic.ValidationError`` or ``ValueError`` for anything else.
    """
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    if "request" in body:
        legacy = LegacyAnswerBody.model_validate(body)
        return AnswerRequest(
            tenant_id=legacy.request.tenant_id,
            user_id=legacy.request.user_id,
            input=legacy.request.input,
            required_sections=legacy.plan.sections,
            requires_retrieval=legacy.plan.requires_retrieval,
            web_sources=legacy.request.web_sources,
        )
    flat = FlatAnswerBody.model_validate(body)
    return AnswerRequest(
        tenant_id=flat.tenant_id,
        user_id=flat.user_id,
        input=flat.input,
        top_k=flat.top_k,
        max_tokens=flat.max_tokens,
        required_sections=flat.required_sections,
        web_sources=flat.web_sources,
    )


class AnswerMeta(_CamelModel):
    tokens_in: int = Field(alias="tokensIn")
    tokens_out: int = Field(alias="tokensOut")
    latency_ms: int = Field(alias="latencyMs")


class AnswerSource(_CamelModel):
    type: str
    snippet: str
    title: str | None = None
    url: str | None = None
    doc_id: str | None = Field(default=None, alias="docId")
    published_at: datetime | None = Field(default=None, alias="publishedAt")


class AnswerResponse(_CamelModel):
    ok: bool = True
    answer: str
    sections: dict[str, str]
    sources: list[AnswerSource]
    citations: list[dict[str, Any]]
    issues: list[dict[str, Any]]
    valid: bool
    disclaimer: str | None = None
    meta: AnswerMeta


class DocumentResponse(_CamelModel):
    ok: bool = True
    document: dict[str, Any]


class DeleteDocumentResponse(_CamelModel):
    ok: bool = True
    doc_id: str = Field(alias="docId")
    deleted_chunks: int = Field(alias="deletedChunks")


class StatsResponse(BaseModel):
    backend: str
    chunk_count: int
    embedding_dimension: int | None = None
    tenant_count: int | None = None
    collection: str | None = None
    document_count: int | None = None


class StatsHealthResponse(BaseModel):
    backend: str
    ok: bool
    detail: str | None = None
    collection: str | None = None


class EmbeddingHealthResponse(BaseModel):
    provider: str
    model: str | None
    configured_dimension: int
    expected_dimension: int | None = None
    ok: bool
    status: str
    detail: str | None = None
    action: str | None = None

"""
schemas/response.py
===================
Pydantic v2 request and response models for the HTTP surface.

Requests are validated here so malformed input never reaches the store or
the pipeline; responses mirror the pipeline results one-to-one.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def _utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class ClinicalDocumentIn(BaseModel):
    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    resource_type: str = ""
    content_type: str = "application/json"
    raw: Any = None
    display_name: Optional[str] = None
    date: Optional[str] = None
    fhir_url: Optional[str] = None
    loinc_coding: List[str] = Field(default_factory=list)
    attachment_text: Optional[str] = None


class IngestRequest(BaseModel):
    documents: List[ClinicalDocumentIn] = Field(..., min_length=1)


class IngestResponse(BaseModel):
    stored_documents: int
    added_chunks: int
    total_chunks: int


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    k: int = Field(4, ge=1, le=100)
    include_values: bool = False


class SearchHitOut(BaseModel):
    id: str
    score: float = Field(..., ge=0.0, le=1.0)
    document_id: Optional[str] = None
    text: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    hits: int = 0
    vector: Optional[List[float]] = None
    vector_mag: Optional[float] = None


class SearchResponse(BaseModel):
    query: str
    similar_items: List[SearchHitOut] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ChatMessageIn(BaseModel):
    role: Literal["user", "ai", "system"]
    text: str


class ChatOptionsIn(BaseModel):
    max_search_iterations: Optional[int] = Field(None, ge=1, le=10)
    max_documents: Optional[int] = Field(None, ge=1, le=100)
    include_related: bool = True
    enable_reranking: bool = True
    stop_on_stagnation: bool = False


class ChatRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    query: str
    messages: List[ChatMessageIn] = Field(default_factory=list)
    options: ChatOptionsIn = Field(default_factory=ChatOptionsIn)

    @field_validator("query")
    @classmethod
    def _strip_query(cls, v: str) -> str:
        return v.strip()


class SourceOut(BaseModel):
    id: str
    resource_type: Optional[str] = None
    date: Optional[str] = None
    display_name: Optional[str] = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    recoverable: bool


class ChatResponse(BaseModel):
    status: Literal["success", "partial", "error"]
    response: Optional[str] = None
    sources: List[SourceOut] = Field(default_factory=list)
    confidence: Optional[float] = None
    errors: List[ErrorDetail] = Field(default_factory=list)
    error: Optional[ErrorDetail] = None
    timestamp: str = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "ok"
    vector_store_ready: bool
    vector_count: int
    document_count: int
    ai_provider: Optional[str] = None
    model: Optional[str] = None
    reranking_enabled: bool = False
    embedding_backend: str
    api_version: str = "1.0.0"

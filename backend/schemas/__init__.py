# backend/schemas/__init__.py
from backend.schemas.response import (
    ChatMessageIn,
    ChatOptionsIn,
    ChatRequest,
    ChatResponse,
    ClinicalDocumentIn,
    ErrorDetail,
    HealthResponse,
    IngestRequest,
    IngestResponse,
    SearchHitOut,
    SearchRequest,
    SearchResponse,
    SourceOut,
)

__all__ = [
    "ChatMessageIn", "ChatOptionsIn", "ChatRequest", "ChatResponse",
    "ClinicalDocumentIn", "ErrorDetail", "HealthResponse",
    "IngestRequest", "IngestResponse",
    "SearchHitOut", "SearchRequest", "SearchResponse", "SourceOut",
]

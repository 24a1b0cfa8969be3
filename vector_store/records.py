"""
records.py
==========
Record types held by the vector store.

A VectorRecord is one embedded chunk of a clinical document.  Its metadata is
typed (ChunkMetadata) for the keys the store and the isolation filter rely on;
anything else a caller attaches is kept verbatim in ``extras``.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

# Keys that ChunkMetadata lifts out of a raw metadata mapping.
_DOCUMENT_ID_KEYS = ("documentId", "document_id")
_KNOWN_KEYS = {"documentId", "document_id", "user_id", "category", "document_type", "url"}


def text_hash(text: str) -> str:
    """SHA-1 hex digest of a chunk's text."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def vector_magnitude(vector: Any) -> float:
    """L2 norm of ``vector``."""
    return float(np.linalg.norm(np.asarray(vector, dtype=np.float64)))


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

@dataclass
class ChunkMetadata:
    document_id: Optional[str] = None
    user_id: Optional[str] = None
    category: Optional[str] = None
    document_type: Optional[str] = None
    url: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChunkMetadata":
        data = data or {}
        document_id = next((data[k] for k in _DOCUMENT_ID_KEYS if data.get(k)), None)
        return cls(
            document_id   = document_id,
            user_id       = data.get("user_id"),
            category      = data.get("category"),
            document_type = data.get("document_type"),
            url           = data.get("url"),
            extras        = {k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extras)
        for key, value in (
            ("documentId", self.document_id),
            ("user_id", self.user_id),
            ("category", self.category),
            ("document_type", self.document_type),
            ("url", self.url),
        ):
            if value is not None:
                out[key] = value
        return out

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a metadata value by its serialised key."""
        if key in _DOCUMENT_ID_KEYS:
            return self.document_id if self.document_id is not None else default
        if key in _KNOWN_KEYS:
            value = getattr(self, key)
            return default if value is None else value
        return self.extras.get(key, default)


@dataclass(frozen=True)
class ChunkSpan:
    offset: int
    size: int


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    id: str
    metadata: ChunkMetadata
    vector: Optional[List[float]] = None
    vector_mag: Optional[float] = None
    user_id: Optional[str] = None      # top-level owner; wins over metadata.user_id
    hash: str = ""
    model: Optional[str] = None
    chunk: Optional[ChunkSpan] = None
    timestamp: int = 0                 # ms since epoch
    hits: int = 0
    text: Optional[str] = None         # held in memory only, never persisted

    def to_row(self) -> Dict[str, Any]:
        """Serialise for persistence (text excluded)."""
        row: Dict[str, Any] = {
            "id":         self.id,
            "metadata":   self.metadata.to_dict(),
            "vector":     list(self.vector or []),
            "vectorMag":  self.vector_mag,
            "hash":       self.hash,
            "timestamp":  self.timestamp,
            "hits":       self.hits,
        }
        if self.user_id is not None:
            row["user_id"] = self.user_id
        if self.model is not None:
            row["model"] = self.model
        if self.chunk is not None:
            row["chunk"] = {"offset": self.chunk.offset, "size": self.chunk.size}
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "VectorRecord":
        vector = [float(v) for v in row.get("vector") or []]
        mag = row.get("vectorMag")
        if mag is None and vector:
            mag = vector_magnitude(vector)
        chunk = row.get("chunk")
        return cls(
            id         = row["id"],
            metadata   = ChunkMetadata.from_dict(row.get("metadata")),
            vector     = vector,
            vector_mag = mag,
            user_id    = row.get("user_id"),
            hash       = row.get("hash", ""),
            model      = row.get("model"),
            chunk      = ChunkSpan(int(chunk["offset"]), int(chunk["size"])) if chunk else None,
            timestamp  = int(row.get("timestamp") or 0),
            hits       = int(row.get("hits") or 0),
        )


@dataclass
class SearchHit:
    """A VectorRecord scored against a query.  ``score`` lies in [0, 1]."""

    id: str
    score: float
    metadata: ChunkMetadata
    user_id: Optional[str] = None
    hash: str = ""
    model: Optional[str] = None
    chunk: Optional[ChunkSpan] = None
    timestamp: int = 0
    hits: int = 0
    text: Optional[str] = None
    vector: Optional[List[float]] = None
    vector_mag: Optional[float] = None

    @property
    def document_id(self) -> Optional[str]:
        return self.metadata.document_id

    @classmethod
    def from_record(cls, record: VectorRecord, score: float, include_values: bool = False) -> "SearchHit":
        return cls(
            id         = record.id,
            score      = score,
            metadata   = record.metadata,
            user_id    = record.user_id,
            hash       = record.hash,
            model      = record.model,
            chunk      = record.chunk,
            timestamp  = record.timestamp,
            hits       = record.hits,
            text       = record.text,
            vector     = list(record.vector or []) if include_values else None,
            vector_mag = record.vector_mag if include_values else None,
        )


@dataclass
class QueryEmbedding:
    text: str
    embedding: List[float]


@dataclass
class SimilaritySearchResult:
    similar_items: List[SearchHit]
    query: QueryEmbedding

"""
vectorizer.py
=============
Turn one ClinicalDocument into embeddable text chunks.

JSON (FHIR bundle entry):
  identifiers and bookkeeping fields are dropped, the entry is flattened and
  the distinct leaf values are joined with ``|`` into a single chunk whose id
  is the document id, capped at MAX_CHARS.

Markup / text:
  documents longer than CHUNK_SIZE are cut into fixed-width chunks with ids
  ``{document_id}_chunk{offset}``; shorter ones become one chunk keyed by the
  document id.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List

from rag_pipeline.documents import JSON_CONTENT_TYPE, ClinicalDocument
from rag_pipeline.settings import CHUNK_SIZE, MAX_CHARS
from vector_store import ChunkMetadata, ChunkSpan, TextItem

DOCUMENT_TYPE = "clinical_document"

_ENTRY_FIELDS_DROPPED = ("link", "fullUrl", "search")
_RESOURCE_FIELDS_DROPPED = ("subject", "id", "status", "identifier")


@dataclass
class VectorizedDocument:
    items: List[TextItem] = field(default_factory=list)
    metadatas: List[ChunkMetadata] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)


def flatten_object(value: Any, prefix: str = "") -> Dict[str, Any]:
    """Flatten nested dicts/lists into ``{"a.b.0.c": leaf}``."""
    flat: Dict[str, Any] = {}
    if isinstance(value, dict):
        for key, child in value.items():
            flat.update(flatten_object(child, f"{prefix}{key}."))
    elif isinstance(value, list):
        for index, child in enumerate(value):
            flat.update(flatten_object(child, f"{prefix}{index}."))
    else:
        flat[prefix[:-1]] = value
    return flat


def _leaf_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def serialize_json_entry(entry: Dict[str, Any]) -> str:
    entry = copy.deepcopy(entry)
    for key in _ENTRY_FIELDS_DROPPED:
        entry.pop(key, None)
    resource = entry.get("resource")
    if isinstance(resource, dict):
        for key in _RESOURCE_FIELDS_DROPPED:
            resource.pop(key, None)

    flat = flatten_object({key: entry[key] for key in sorted(entry)})
    values: List[str] = []
    seen = set()
    for leaf in flat.values():
        text = _leaf_text(leaf)
        if text not in seen:
            seen.add(text)
            values.append(text)
    return "|".join(values)[:MAX_CHARS]


def _chunk_metadata(document: ClinicalDocument) -> ChunkMetadata:
    return ChunkMetadata(
        document_id   = document.id,
        user_id       = document.user_id or None,
        category      = document.resource_type or None,
        document_type = DOCUMENT_TYPE,
        url           = document.fhir_url,
    )


def prepare_clinical_document_for_vectorization(document: ClinicalDocument) -> VectorizedDocument:
    out = VectorizedDocument()

    if document.content_type == JSON_CONTENT_TYPE:
        if not isinstance(document.raw, dict):
            return out
        out.items.append(TextItem(id=document.id, text=serialize_json_entry(document.raw)))
        out.metadatas.append(_chunk_metadata(document))
        return out

    content = document.raw if isinstance(document.raw, str) else ""
    if not content:
        return out

    if len(content) > CHUNK_SIZE:
        for offset in range(0, len(content), CHUNK_SIZE):
            chunk = content[offset:offset + CHUNK_SIZE]
            out.items.append(TextItem(
                id    = f"{document.id}_chunk{offset}",
                text  = chunk,
                chunk = ChunkSpan(offset=offset, size=len(chunk)),
            ))
            out.metadatas.append(_chunk_metadata(document))
    else:
        out.items.append(TextItem(id=document.id, text=content))
        out.metadatas.append(_chunk_metadata(document))
    return out

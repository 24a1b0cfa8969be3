"""
chunk_extractor.py
==================
Pull the matching sections out of a large attachment (a DocumentReference
with extracted text) for the generation context.

Sections are not tracked below document level yet, so a matching attachment
contributes its whole extracted text as one chunk keyed by the document id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from rag_pipeline.documents import ClinicalDocument

CHUNK_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class ExtractedChunk:
    document_id: str
    chunk_id: str
    content: str
    offset: int
    size: int


def extract_relevant_chunks(
    document: ClinicalDocument,
    attachment_text: Optional[str],
    relevant_chunk_ids: Sequence[str],
) -> List[ExtractedChunk]:
    if not attachment_text or not relevant_chunk_ids:
        return []
    return [ExtractedChunk(
        document_id = document.id,
        chunk_id    = document.id,
        content     = attachment_text,
        offset      = 0,
        size        = len(attachment_text),
    )]


def format_chunks_for_context(chunks: Sequence[ExtractedChunk]) -> str:
    return CHUNK_SEPARATOR.join(chunk.content for chunk in chunks)


def document_header(document: ClinicalDocument) -> str:
    return f"DocumentReference: {document.display_name or 'Document'}\n"

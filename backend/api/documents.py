"""
api/documents.py
================
POST /api/documents
-------------------
Store clinical documents and index their chunks in the vector store.

Re-posting a document replaces it in the repository; chunks already in the
store are not embedded again.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from backend.schemas.response import IngestRequest, IngestResponse
from backend.services import Services, get_services
from rag_pipeline.documents import ClinicalDocument
from rag_pipeline.indexer import index_documents
from vector_store import InvalidInputError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/documents", response_model=IngestResponse)
async def ingest_documents(
    payload: IngestRequest,
    services: Services = Depends(get_services),
):
    documents = [ClinicalDocument.from_dict(d.model_dump()) for d in payload.documents]
    stored = await services.repository.upsert_many(documents)

    try:
        added = await index_documents(services.store, documents)
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("Indexing %d documents failed: %s", len(documents), exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Embedding provider failed: {exc}",
        ) from exc

    logger.info("Ingested %d documents (%d new chunks)", stored, added)
    return IngestResponse(
        stored_documents = stored,
        added_chunks     = added,
        total_chunks     = services.store.count(),
    )

"""
api/search.py
=============
POST /api/search — raw similarity search over one user's chunks.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from backend.schemas.response import SearchHitOut, SearchRequest, SearchResponse
from backend.services import Services, get_services
from vector_store import FilterOptions

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/search", response_model=SearchResponse)
async def search(
    payload: SearchRequest,
    services: Services = Depends(get_services),
):
    try:
        result = await services.store.similarity_search(
            payload.query,
            k              = payload.k,
            filter_options = FilterOptions.for_user(payload.user_id),
            include_values = payload.include_values,
        )
    except Exception as exc:
        logger.error("Similarity search failed: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Embedding provider failed: {exc}",
        ) from exc

    return SearchResponse(
        query         = result.query.text,
        similar_items = [
            SearchHitOut(
                id          = hit.id,
                score       = hit.score,
                document_id = hit.document_id,
                text        = hit.text,
                metadata    = hit.metadata.to_dict(),
                hits        = hit.hits,
                vector      = hit.vector,
                vector_mag  = hit.vector_mag,
            )
            for hit in result.similar_items
        ],
    )

"""
api/health.py
=============
GET /api/health — liveness and readiness probe.
"""

from fastapi import APIRouter, Depends

from backend.schemas.response import HealthResponse
from backend.services import Services, get_services

router = APIRouter()


@router.get("/api/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)):
    """Return service status and component readiness flags."""
    config = services.provider.get_config() if services.provider is not None else None

    return HealthResponse(
        status             = "ok",
        vector_store_ready = services.store.has_initialized,
        vector_count       = services.store.count(),
        document_count     = await services.repository.count(),
        ai_provider        = config.ai_provider if config else None,
        model              = config.model if config else None,
        reranking_enabled  = bool(config) and not config.skip_reranking,
        embedding_backend  = services.settings.embedding_backend,
    )

"""
services.py
===========
Process-wide singletons (store, repository, provider) and the FastAPI
dependency that hands them to the routers.

``build_services`` wires everything from Settings; tests build a Services
directly with fakes and pass it to ``create_app``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request

from rag_pipeline.documents import DocumentRepository
from rag_pipeline.embedder import build_embedding_fn, embedding_model_name
from rag_pipeline.errors import RAGError
from rag_pipeline.indexer import VectorIndexSyncer
from rag_pipeline.llm_engine import CompletionProvider, build_provider
from rag_pipeline.orchestrator import SessionGuard
from rag_pipeline.related import RepositoryRelatedFetcher
from rag_pipeline.settings import Settings
from vector_store import JsonFilePersistence, VectorStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: VectorStore
    repository: DocumentRepository
    provider: Optional[CompletionProvider] = None
    related_fetcher: Optional[RepositoryRelatedFetcher] = None
    session_guard: SessionGuard = field(default_factory=SessionGuard)

    def __post_init__(self) -> None:
        if self.related_fetcher is None:
            self.related_fetcher = RepositoryRelatedFetcher(self.repository)

    @property
    def syncer(self) -> VectorIndexSyncer:
        return VectorIndexSyncer(self.store, self.repository)

    async def startup(self) -> None:
        await self.repository.initialize()
        await self.store.initialize()
        logger.info(
            "Vector store ready (%d chunks), %d clinical documents",
            self.store.count(), await self.repository.count(),
        )

    async def shutdown(self) -> None:
        await self.store.flush()


def build_services(settings: Settings) -> Services:
    store = VectorStore(
        embed_texts_fn  = build_embedding_fn(settings),
        persistence     = JsonFilePersistence(settings.vector_store_dir),
        embedding_model = embedding_model_name(settings),
    )
    repository = DocumentRepository(settings.vector_store_dir)

    provider: Optional[CompletionProvider] = None
    try:
        provider = build_provider(settings)
    except RAGError as exc:
        logger.warning("Completion provider unavailable, chat disabled: %s", exc.message)

    return Services(settings=settings, store=store, repository=repository, provider=provider)


def get_services(request: Request) -> Services:
    return request.app.state.services

"""
indexer.py
==========
Keep the vector store in step with the document repository.

``VectorIndexSyncer.sync`` pages through every clinical document, chunks
each page and hands the chunks to ``VectorStore.add_texts`` in one batch.
Chunks already in the store are skipped by the store itself, so a sweep is
idempotent and also rebuilds anything a lost write-behind dropped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from rag_pipeline.documents import ClinicalDocument, DocumentRepository
from rag_pipeline.settings import PAGE_SIZE
from rag_pipeline.vectorizer import prepare_clinical_document_for_vectorization
from vector_store import ChunkMetadata, TextItem, VectorStore

logger = logging.getLogger(__name__)


@dataclass
class SyncProgress:
    total_documents: int = 0
    processed_documents: int = 0
    added_chunks: int = 0
    pages: int = 0

    @property
    def complete(self) -> bool:
        return self.processed_documents >= self.total_documents


ProgressCallback = Callable[[SyncProgress], None]


async def index_documents(store: VectorStore, documents: List[ClinicalDocument]) -> int:
    """Chunk and embed ``documents`` in one store call.  Returns the number of new chunks."""
    items: List[TextItem] = []
    metadatas: List[ChunkMetadata] = []
    for doc in documents:
        vectorized = prepare_clinical_document_for_vectorization(doc)
        items.extend(vectorized.items)
        metadatas.extend(vectorized.metadatas)
    if not items:
        return 0
    added = await store.add_texts(items, metadatas)
    return len(added)


class VectorIndexSyncer:
    def __init__(
        self,
        store: VectorStore,
        repository: DocumentRepository,
        page_size: int = PAGE_SIZE,
    ):
        self._store = store
        self._repository = repository
        self._page_size = page_size
        self.progress = SyncProgress()

    async def sync(
        self,
        user_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncProgress:
        """Index every document (of ``user_id`` when given)."""
        start = time.perf_counter()
        await self._store.initialize()
        progress = SyncProgress(total_documents=await self._repository.count(user_id))
        self.progress = progress

        offset = 0
        while True:
            page = await self._repository.page(offset, self._page_size, user_id)
            if not page:
                break
            progress.added_chunks += await index_documents(self._store, page)
            progress.processed_documents += len(page)
            progress.pages += 1
            offset += len(page)
            if on_progress is not None:
                on_progress(progress)
            logger.debug(
                "Indexed page %d (%d/%d documents)",
                progress.pages, progress.processed_documents, progress.total_documents,
            )

        logger.info(
            "Vector sync finished: %d documents, %d new chunks in %.2fs",
            progress.processed_documents, progress.added_chunks, time.perf_counter() - start,
        )
        return progress

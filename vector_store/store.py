"""
store.py
========
Local-first vector store with exact cosine-similarity search.

Every embedded chunk lives in memory; search is a brute-force linear scan
over the (filtered) corpus, which is the intended design for per-user corpora
of thousands of chunks.  Persistence is write-behind through DeferredWriter,
so neither ``add_texts`` nor ``similarity_search`` waits on disk.

Scores are cosine similarity remapped from [-1, 1] to [0, 1]:

    score = (dot(a, b) / (|a| * |b|) + 1) / 2
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Union

import numpy as np

from vector_store.errors import InvalidInputError
from vector_store.filters import FilterOptions, filter_records
from vector_store.persistence import InMemoryPersistence, VectorPersistence
from vector_store.records import (
    ChunkMetadata,
    ChunkSpan,
    QueryEmbedding,
    SearchHit,
    SimilaritySearchResult,
    VectorRecord,
    text_hash,
    vector_magnitude,
)
from vector_store.writer import DeferredWriter

logger = logging.getLogger(__name__)

EmbeddingFn = Callable[[List[str]], Awaitable[List[List[float]]]]

DEFAULT_K = 4


@dataclass
class TextItem:
    """One chunk of text to embed, keyed by a globally unique chunk id."""

    id: str
    text: str
    chunk: Optional[ChunkSpan] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def cosine_scores(matrix: np.ndarray, mags: np.ndarray, query: np.ndarray, query_mag: float) -> np.ndarray:
    """
    Remapped cosine similarity of each row of ``matrix`` against ``query``.

    A zero-magnitude vector on either side has no direction; it scores as
    cosine 0, i.e. 0.5 after remapping.
    """
    dots = matrix @ query
    denom = mags * query_mag
    cosine = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
    return np.clip((cosine + 1.0) / 2.0, 0.0, 1.0)


class VectorStore:
    def __init__(
        self,
        embed_texts_fn: EmbeddingFn,
        persistence: Optional[VectorPersistence] = None,
        embedding_model: Optional[str] = None,
    ):
        self._embed_texts = embed_texts_fn
        self._persistence = persistence if persistence is not None else InMemoryPersistence()
        self._embedding_model = embedding_model
        self._records: List[VectorRecord] = []
        self._by_id: Dict[str, VectorRecord] = {}
        self._init_task: Optional[asyncio.Future] = None
        self._writer = DeferredWriter(self._persist)
        self.has_initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load persisted records.  Concurrent callers share a single load."""
        if self.has_initialized:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._load_from_storage())
        try:
            await self._init_task
        except Exception:
            self._init_task = None
            raise

    async def _load_from_storage(self) -> None:
        start = time.perf_counter()
        rows = await self._persistence.find()
        records = [VectorRecord.from_row(row) for row in rows]
        self._records = records
        self._by_id = {r.id: r for r in records}
        self.has_initialized = True
        logger.debug(
            "Loading %d vector records took %.2fms",
            len(records), (time.perf_counter() - start) * 1000,
        )

    async def flush(self) -> None:
        """Wait for deferred writes to land."""
        await self._writer.flush()

    async def _persist(self, ids: Set[str]) -> None:
        start = time.perf_counter()
        rows = [self._by_id[i].to_row() for i in ids if i in self._by_id]
        if rows:
            await self._persistence.bulk_upsert(rows)
        logger.debug("Saving %d vector records took %.2fms", len(rows), (time.perf_counter() - start) * 1000)

    def count(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._by_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_text(
        self,
        item: TextItem,
        metadata: Union[ChunkMetadata, Dict[str, Any]],
    ) -> Optional[VectorRecord]:
        """Embed one chunk.  Returns None when the id is already stored."""
        added = await self.add_texts([item], [metadata])
        return added[0] if added else None

    async def add_texts(
        self,
        items: Sequence[TextItem],
        metadatas: Sequence[Union[ChunkMetadata, Dict[str, Any]]],
    ) -> List[VectorRecord]:
        """
        Embed and append the items whose ids are not stored yet.

        All new items go to the embedding function in one batch.  Returns only
        the newly added records; an already indexed batch returns ``[]``.
        """
        if len(items) != len(metadatas):
            raise InvalidInputError(
                f"The lengths of texts and metadata arrays must match ({len(items)} != {len(metadatas)})."
            )
        await self.initialize()

        seen: Set[str] = set()
        new_docs: List[VectorRecord] = []
        for item, raw_meta in zip(items, metadatas):
            if not item.id or item.id in self._by_id or item.id in seen:
                continue
            seen.add(item.id)
            meta = raw_meta if isinstance(raw_meta, ChunkMetadata) else ChunkMetadata.from_dict(raw_meta)
            new_docs.append(VectorRecord(
                id        = item.id,
                metadata  = meta,
                user_id   = meta.user_id,
                hash      = text_hash(item.text),
                chunk     = item.chunk,
                timestamp = _now_ms(),
                text      = item.text,
            ))

        if not new_docs:
            return []

        vectors = await self._embed_texts([d.text or "" for d in new_docs])
        if not isinstance(vectors, (list, tuple)) or len(vectors) != len(new_docs):
            raise InvalidInputError("Number of vectors must match number of documents")

        for index, (doc, vector) in enumerate(zip(new_docs, vectors)):
            values = [float(v) for v in vector] if vector is not None else []
            if not values:
                raise InvalidInputError(f"Invalid vector at index {index}")
            doc.vector = values
            doc.vector_mag = vector_magnitude(values)
            doc.model = self._embedding_model

        # A concurrent add may have claimed an id while we were embedding.
        new_docs = [d for d in new_docs if d.id not in self._by_id]
        for doc in new_docs:
            self._records.append(doc)
            self._by_id[doc.id] = doc

        self._writer.schedule(d.id for d in new_docs)
        logger.debug("Added %d new vector records (%d total)", len(new_docs), len(self._records))
        return new_docs

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def similarity_search(
        self,
        query: str,
        k: int = DEFAULT_K,
        filter_options: Optional[FilterOptions] = None,
        include_values: bool = False,
    ) -> SimilaritySearchResult:
        """
        Rank the filtered corpus against ``query`` and return the top ``k``.

        Ties keep insertion order.  Each returned record's ``hits`` counter is
        incremented and scheduled for write-behind.  Embedding errors
        propagate to the caller.
        """
        await self.initialize()
        total_start = start = time.perf_counter()

        embeddings = await self._embed_texts([query])
        query_embedding = [float(v) for v in embeddings[0]]
        logger.debug("Query embedding took %.2fms", (time.perf_counter() - start) * 1000)

        start = time.perf_counter()
        query_vec = np.asarray(query_embedding, dtype=np.float64)
        query_mag = vector_magnitude(query_vec)
        logger.debug("Magnitude calculation took %.2fms", (time.perf_counter() - start) * 1000)

        start = time.perf_counter()
        candidates = filter_records(self._records, filter_options)
        same_dim = [r for r in candidates if r.vector is not None and len(r.vector) == len(query_embedding)]
        if len(same_dim) != len(candidates):
            logger.warning(
                "Skipped %d records whose vector length differs from the query (%d)",
                len(candidates) - len(same_dim), len(query_embedding),
            )
        logger.debug("Filtering took %.2fms", (time.perf_counter() - start) * 1000)

        hits: List[SearchHit] = []
        if same_dim and k > 0:
            start = time.perf_counter()
            matrix = np.asarray([r.vector for r in same_dim], dtype=np.float64)
            mags = np.asarray([r.vector_mag or 0.0 for r in same_dim], dtype=np.float64)
            scores = cosine_scores(matrix, mags, query_vec, query_mag)
            logger.debug("Similarity scores calculation took %.2fms", (time.perf_counter() - start) * 1000)

            start = time.perf_counter()
            order = np.argsort(-scores, kind="stable")[:k]
            logger.debug("Sorting took %.2fms", (time.perf_counter() - start) * 1000)

            for idx in order:
                record = same_dim[int(idx)]
                record.hits += 1
                hits.append(SearchHit.from_record(record, float(scores[idx]), include_values))
            self._writer.schedule(h.id for h in hits)

        logger.debug("Total similarity search took %.2fms", (time.perf_counter() - total_start) * 1000)
        return SimilaritySearchResult(
            similar_items = hits,
            query         = QueryEmbedding(text=query, embedding=query_embedding),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def remove_all(self) -> None:
        """Bulk collection removal, e.g. ahead of a re-index after a schema change."""
        await self.flush()
        self._records = []
        self._by_id = {}
        await self._persistence.remove()
        logger.info("Vector store cleared")

    async def migrate_user_scoping(self) -> int:
        """Lift legacy ``metadata.user_id`` to the top-level owner field.  Returns records changed."""
        await self.initialize()
        changed = [r for r in self._records if not r.user_id and r.metadata.user_id]
        for record in changed:
            record.user_id = record.metadata.user_id
        self._writer.schedule(r.id for r in changed)
        if changed:
            logger.info("Migrated user scoping on %d vector records", len(changed))
        return len(changed)

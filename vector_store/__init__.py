"""
vector_store — local-first embedded-chunk store with exact cosine search.

Components:
  records      — VectorRecord / SearchHit / typed chunk metadata
  filters      — include/exclude metadata filters with per-user isolation
  persistence  — in-memory and JSON-file backends (find + bulk_upsert)
  writer       — deferred, coalesced write-behind queue
  store        — VectorStore: add_texts / similarity_search
"""

from vector_store.errors import InvalidInputError
from vector_store.filters import FilterCriteria, FilterOptions, owner_of
from vector_store.persistence import InMemoryPersistence, JsonFilePersistence, VectorPersistence
from vector_store.records import ChunkMetadata, ChunkSpan, SearchHit, SimilaritySearchResult, VectorRecord
from vector_store.store import EmbeddingFn, TextItem, VectorStore

__all__ = [
    "InvalidInputError", "FilterCriteria", "FilterOptions", "owner_of",
    "InMemoryPersistence", "JsonFilePersistence", "VectorPersistence",
    "ChunkMetadata", "ChunkSpan", "SearchHit", "SimilaritySearchResult", "VectorRecord",
    "EmbeddingFn", "TextItem", "VectorStore",
]

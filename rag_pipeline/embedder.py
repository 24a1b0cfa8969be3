"""
embedder.py
===========
Convert text strings into dense embedding vectors.

Backends (EMBEDDING_BACKEND):
  sentence_transformers  local model (LOCAL_EMBED_MODEL), offline
  openai                 OpenAI embeddings API with reduced dimensions
  hash                   deterministic token-hash vectors, for tests and dev

The vector store expects a stable vector length, so a backend failure is
raised to the caller rather than papered over with another backend.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from threading import Lock
from typing import Dict, List

from rag_pipeline.settings import Settings
from vector_store import EmbeddingFn

logger = logging.getLogger(__name__)

_st_models: Dict[str, object] = {}    # sentence-transformers models by name
_model_lock = Lock()

HASH_DIMENSIONS = 256
BACKENDS = ("sentence_transformers", "openai", "hash")


# ---------------------------------------------------------------------------
# Sentence-Transformers
# ---------------------------------------------------------------------------

def _embed_st(texts: List[str], model_name: str) -> List[List[float]]:
    model = _st_models.get(model_name)
    if model is None:
        with _model_lock:
            model = _st_models.get(model_name)
            if model is None:
                from sentence_transformers import SentenceTransformer  # type: ignore
                model = SentenceTransformer(model_name)
                _st_models[model_name] = model
                logger.info("Embedder backend: sentence_transformers (%s)", model_name)

    vecs = model.encode(
        texts,
        batch_size=32,
        show_progress_bar=False,
        convert_to_numpy=True,
        normalize_embeddings=True,
    )
    return [v.tolist() for v in vecs]


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

def _embed_openai(texts: List[str], settings: Settings) -> List[List[float]]:
    from openai import OpenAI  # type: ignore

    client = OpenAI(
        api_key  = settings.openai_api_key,
        base_url = settings.openai_base_url or None,
        timeout  = 60.0,
    )
    response = client.embeddings.create(
        model      = settings.openai_embedding_model,
        input      = texts,
        dimensions = settings.openai_embedding_dimensions,
    )
    ordered = sorted(response.data, key=lambda item: item.index)
    return [list(item.embedding) for item in ordered]


# ---------------------------------------------------------------------------
# Hash
# ---------------------------------------------------------------------------

def _embed_hash(texts: List[str], dim: int = HASH_DIMENSIONS) -> List[List[float]]:
    """Deterministic bag-of-tokens vectors (no model download)."""
    vectors: List[List[float]] = []
    for text in texts:
        values = [0.0] * dim
        for token in text.lower().split():
            digest = hashlib.sha256(token.encode("utf-8", errors="ignore")).digest()
            idx = int.from_bytes(digest[:2], "big") % dim
            sign = 1.0 if digest[2] % 2 == 0 else -1.0
            values[idx] += sign

        norm = sum(v * v for v in values) ** 0.5
        if norm > 0:
            values = [v / norm for v in values]
        vectors.append(values)
    return vectors


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def embedding_model_name(settings: Settings) -> str:
    """Model identifier recorded on every stored vector."""
    if settings.embedding_backend == "openai":
        return f"{settings.openai_embedding_model}:{settings.openai_embedding_dimensions}"
    if settings.embedding_backend == "hash":
        return f"hash:{HASH_DIMENSIONS}"
    return settings.local_embed_model


def embed_texts(texts: List[str], settings: Settings) -> List[List[float]]:
    """Return a list of embedding vectors, one per input text."""
    if not texts:
        return []

    backend = settings.embedding_backend
    if backend == "sentence_transformers":
        return _embed_st(texts, settings.local_embed_model)
    if backend == "openai":
        return _embed_openai(texts, settings)
    if backend == "hash":
        return _embed_hash(texts)
    raise ValueError(f"Unknown EMBEDDING_BACKEND: {backend!r}. Supported: {', '.join(BACKENDS)}")


def build_embedding_fn(settings: Settings) -> EmbeddingFn:
    """Async EmbeddingFn for the vector store; model calls run in a worker thread."""
    if settings.embedding_backend not in BACKENDS:
        raise ValueError(
            f"Unknown EMBEDDING_BACKEND: {settings.embedding_backend!r}. Supported: {', '.join(BACKENDS)}"
        )

    async def _embed(texts: List[str]) -> List[List[float]]:
        return await asyncio.to_thread(embed_texts, list(texts), settings)

    return _embed

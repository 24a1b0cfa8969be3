"""
settings.py
===========
Runtime configuration (environment driven) and pipeline tuning constants.

``.env`` is loaded by the FastAPI entry point; this module only reads
``os.environ``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Pipeline constants
# ---------------------------------------------------------------------------

RELEVANCE_SCORE_THRESHOLD   = 5      # reranker score (0-10) a text should reach
TOP_RESULTS_FALLBACK        = 3      # kept when the reranker rejects everything
MAX_FINAL_CONTEXT_DOCUMENTS = 20     # default cap for DocumentPreparer.limit()
DISABLE_OLLAMA_RERANKING    = False
RELATED_LABS_LIMIT          = 3      # sibling observations fetched per lab result

DEFAULT_SEARCH_LIMIT        = 10
SINGLE_PASS_SEARCH_LIMIT    = 20
ITERATIVE_SEARCH_LIMIT      = 30
DEFAULT_MAX_ITERATIONS      = 3

GENERATION_TEMPERATURE      = 0.3
RERANK_TEMPERATURE          = 0.1

MAX_CHARS                   = 18000  # serialised JSON resource cap
CHUNK_SIZE                  = 1000   # markup chunk width in characters
PAGE_SIZE                   = 50     # documents per indexer batch


def _clean_env(name: str, default: str = "") -> str:
    value = os.getenv(name, default)
    return value.strip().strip('"').strip("'")


def _int_env(name: str, default: int) -> int:
    raw = _clean_env(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from exc


@dataclass
class Settings:
    ai_provider: str = "ollama"                       # openai | ollama
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_rerank_model: str = "gpt-4o-mini"
    openai_base_url: str = ""
    ollama_endpoint: str = "http://localhost:11434"
    ollama_model: str = "gpt-oss:20b"
    ollama_rerank_model: str = ""
    embedding_backend: str = "sentence_transformers"  # sentence_transformers | openai | hash
    local_embed_model: str = "all-MiniLM-L6-v2"
    openai_embedding_model: str = "text-embedding-3-large"
    openai_embedding_dimensions: int = 512
    vector_store_dir: str = "./vector_data"
    max_search_iterations: int = DEFAULT_MAX_ITERATIONS
    max_context_documents: int = MAX_FINAL_CONTEXT_DOCUMENTS

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        settings = cls(
            ai_provider                 = _clean_env("AI_PROVIDER", defaults.ai_provider).lower(),
            openai_api_key              = _clean_env("OPENAI_API_KEY", ""),
            openai_model                = _clean_env("OPENAI_MODEL", defaults.openai_model),
            openai_rerank_model         = _clean_env("OPENAI_RERANK_MODEL", defaults.openai_rerank_model),
            openai_base_url             = _clean_env("OPENAI_BASE_URL", ""),
            ollama_endpoint             = _clean_env("OLLAMA_ENDPOINT", defaults.ollama_endpoint),
            ollama_model                = _clean_env("OLLAMA_MODEL", defaults.ollama_model),
            ollama_rerank_model         = _clean_env("OLLAMA_RERANK_MODEL", ""),
            embedding_backend           = _clean_env("EMBEDDING_BACKEND", defaults.embedding_backend).lower(),
            local_embed_model           = _clean_env("LOCAL_EMBED_MODEL", defaults.local_embed_model),
            openai_embedding_model      = _clean_env("OPENAI_EMBEDDING_MODEL", defaults.openai_embedding_model),
            openai_embedding_dimensions = _int_env("OPENAI_EMBEDDING_DIMENSIONS", defaults.openai_embedding_dimensions),
            vector_store_dir            = _clean_env("VECTOR_STORE_DIR", defaults.vector_store_dir),
            max_search_iterations       = _int_env("MAX_SEARCH_ITERATIONS", defaults.max_search_iterations),
            max_context_documents       = _int_env("MAX_CONTEXT_DOCUMENTS", defaults.max_context_documents),
        )
        if settings.ai_provider not in ("openai", "ollama"):
            raise ValueError(f"Unknown AI_PROVIDER: {settings.ai_provider!r}. Supported: 'openai', 'ollama'")
        return settings

"""
orchestrator.py
===============
Retrieval-augmented answer generation over one user's records.

    Searching -> Preparing -> Generating -> Done
        \\            \\            \\
         +------------+------------+--> Error

``perform_rag`` returns the whole answer; ``perform_rag_with_streaming``
forwards text deltas to ``on_chunk`` as they arrive.  Neither raises: every
outcome is a ``RAGSuccess``, ``RAGPartial`` or ``RAGFailure``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from rag_pipeline.documents import ClinicalDocument
from rag_pipeline.errors import RAGError, RAGErrorCode
from rag_pipeline.llm_engine import ChatMessage, ChunkCallback, CompletionProvider
from rag_pipeline.preparer import DocumentPreparer, PreparationParams, PreparedDocuments, PreparerDependencies
from rag_pipeline.prompts import MEDICAL_AI_SYSTEM_PROMPT, build_rag_user_prompt
from rag_pipeline.related import RelatedDocumentsFetcher
from rag_pipeline.retriever import DocumentLookup, DocumentSearchResult, iterative_search, search_documents
from rag_pipeline.settings import (
    GENERATION_TEMPERATURE,
    ITERATIVE_SEARCH_LIMIT,
    MAX_FINAL_CONTEXT_DOCUMENTS,
    SINGLE_PASS_SEARCH_LIMIT,
)
from vector_store import FilterOptions, VectorStore

logger = logging.getLogger(__name__)

STATUS_SEARCHING = "Searching medical records"
STATUS_PREPARING = "Preparing information"
STATUS_GENERATING = "Generating response"

StatusCallback = Callable[[str], Union[None, Awaitable[None]]]


# ---------------------------------------------------------------------------
# Inputs and results
# ---------------------------------------------------------------------------

@dataclass
class RAGOptions:
    max_search_iterations: int = 1
    max_documents: int = MAX_FINAL_CONTEXT_DOCUMENTS
    include_related: bool = True
    enable_reranking: bool = True
    stop_on_stagnation: bool = False


@dataclass
class RAGContext:
    query: str
    user_id: str
    store: VectorStore
    lookup: DocumentLookup
    provider: CompletionProvider
    messages: List[ChatMessage] = field(default_factory=list)
    options: RAGOptions = field(default_factory=RAGOptions)
    related_fetcher: Optional[RelatedDocumentsFetcher] = None
    attachment_map: Optional[Dict[str, str]] = None
    on_status_update: Optional[StatusCallback] = None
    preparer_deps: Optional[PreparerDependencies] = None


@dataclass
class RAGSuccess:
    response: str
    sources: List[ClinicalDocument]
    confidence: float
    status: str = "success"


@dataclass
class RAGPartial:
    response: str
    sources: List[ClinicalDocument]
    errors: List[RAGError]
    status: str = "partial"


@dataclass
class RAGFailure:
    error: RAGError
    status: str = "error"


RAGResult = Union[RAGSuccess, RAGPartial, RAGFailure]


# ---------------------------------------------------------------------------
# Per-session serialisation
# ---------------------------------------------------------------------------

class SessionGuard:
    """
    One RAG call at a time per session key.

    A second call for the same key waits for the first to finish; calls for
    different keys run concurrently.  Nothing is cancelled.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: Dict[str, int] = defaultdict(int)

    def is_busy(self, key: str) -> bool:
        return self._locks[key].locked() if key in self._locks else False

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        self._waiters[key] += 1
        try:
            async with self._locks[key]:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def _notify(callback: Optional[StatusCallback], status: str) -> None:
    if callback is None:
        return
    try:
        result = callback(status)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.warning("Status callback failed for %r: %s", status, exc)


async def _search(context: RAGContext) -> DocumentSearchResult:
    filter_options = FilterOptions.for_user(context.user_id)
    options = context.options
    if options.max_search_iterations and options.max_search_iterations > 1:
        return await iterative_search(
            [context.query],
            context.store,
            context.lookup,
            filter_options,
            limit              = ITERATIVE_SEARCH_LIMIT,
            max_iterations     = options.max_search_iterations,
            stop_on_stagnation = options.stop_on_stagnation,
        )
    return await search_documents(
        [context.query], context.store, context.lookup, filter_options, limit=SINGLE_PASS_SEARCH_LIMIT,
    )


async def _search_and_prepare(context: RAGContext) -> Tuple[PreparedDocuments, float]:
    if not context.query or not context.query.strip():
        raise RAGError("Query must not be empty", RAGErrorCode.INVALID_INPUT, True)
    if not context.user_id:
        raise RAGError("A user id is required to scope the search", RAGErrorCode.INVALID_INPUT, False)

    await _notify(context.on_status_update, STATUS_SEARCHING)
    logger.info("Starting document search for query: %r", context.query)
    search = await _search(context)
    logger.info(
        "RAG search complete. Found %d documents with confidence %.2f",
        len(search.documents), search.confidence,
    )
    if not search.documents:
        raise RAGError("No relevant medical records found for your query", RAGErrorCode.NO_DOCUMENTS, True)

    await _notify(context.on_status_update, STATUS_PREPARING)
    deps = context.preparer_deps or PreparerDependencies()
    if context.options.include_related and deps.related_fetcher is None and context.related_fetcher is not None:
        deps = PreparerDependencies(
            vectorizer      = deps.vectorizer,
            related_fetcher = context.related_fetcher,
            extract_chunks  = deps.extract_chunks,
            format_chunks   = deps.format_chunks,
            reranker        = deps.reranker,
        )

    preparer = DocumentPreparer(
        params = PreparationParams(
            documents          = tuple(search.documents),
            relevant_chunk_ids = tuple(search.relevant_chunk_ids),
            query              = context.query,
            user_id            = context.user_id,
            attachment_map     = context.attachment_map,
            provider           = context.provider,
            enable_reranking   = context.options.enable_reranking,
        ),
        deps = deps,
    )
    preparer = await preparer.extract_texts()
    if context.options.include_related:
        preparer = await preparer.fetch_related()
    preparer = await preparer.deduplicate().rerank()
    prepared = preparer.limit(context.options.max_documents).build()

    logger.info(
        "Document preparation complete. Prepared %d text chunks from %d source documents",
        len(prepared.texts), len(prepared.source_docs),
    )
    return prepared, search.confidence


def _as_rag_error(exc: BaseException) -> RAGError:
    if isinstance(exc, RAGError):
        return exc
    return RAGError("An unexpected error occurred", RAGErrorCode.AI_PROVIDER, False, exc)


async def perform_rag(context: RAGContext) -> RAGResult:
    try:
        prepared, confidence = await _search_and_prepare(context)

        await _notify(context.on_status_update, STATUS_GENERATING)
        response = await context.provider.complete(
            MEDICAL_AI_SYSTEM_PROMPT,
            build_rag_user_prompt(context.query, prepared),
            messages    = context.messages,
            temperature = GENERATION_TEMPERATURE,
        )
        logger.info("Returning %d source documents", len(prepared.source_docs))
        return RAGSuccess(response=response, sources=prepared.source_docs, confidence=confidence)
    except Exception as exc:
        error = _as_rag_error(exc)
        _log_failure(error)
        return RAGFailure(error=error)


async def perform_rag_with_streaming(context: RAGContext, on_chunk: ChunkCallback) -> RAGResult:
    """
    Like ``perform_rag`` but streams the answer.

    If the provider fails after text was already forwarded, the text received
    so far comes back as a ``RAGPartial``.
    """
    received: List[str] = []

    async def forward(chunk: str) -> None:
        received.append(chunk)
        result = on_chunk(chunk)
        if inspect.isawaitable(result):
            await result

    prepared: Optional[PreparedDocuments] = None
    try:
        prepared, confidence = await _search_and_prepare(context)

        await _notify(context.on_status_update, STATUS_GENERATING)
        response = await context.provider.stream_complete(
            MEDICAL_AI_SYSTEM_PROMPT,
            build_rag_user_prompt(context.query, prepared),
            forward,
            messages    = context.messages,
            temperature = GENERATION_TEMPERATURE,
        )
        logger.info("Streaming response complete, returning %d source documents", len(prepared.source_docs))
        return RAGSuccess(response=response, sources=prepared.source_docs, confidence=confidence)
    except Exception as exc:
        error = _as_rag_error(exc)
        _log_failure(error)
        if received and prepared is not None:
            return RAGPartial(response="".join(received), sources=prepared.source_docs, errors=[error])
        return RAGFailure(error=error)


def _log_failure(error: RAGError) -> None:
    if error.recoverable:
        logger.info("RAG request ended with %s: %s", error.code.value, error.message)
    else:
        logger.error("RAG request failed with %s: %s", error.code.value, error.message, exc_info=error.cause or error)


def result_to_dict(result: RAGResult) -> Dict[str, Any]:
    """JSON-ready view of a result (sources reduced to id, type and date)."""
    if isinstance(result, RAGFailure):
        return {"status": result.status, "error": _error_to_dict(result.error)}

    sources = [
        {"id": d.id, "resource_type": d.fhir_resource_type or None, "date": d.date, "display_name": d.display_name}
        for d in result.sources
    ]
    if isinstance(result, RAGPartial):
        return {
            "status":   result.status,
            "response": result.response,
            "sources":  sources,
            "errors":   [_error_to_dict(e) for e in result.errors],
        }
    return {
        "status":     result.status,
        "response":   result.response,
        "sources":    sources,
        "confidence": result.confidence,
    }


def _error_to_dict(error: RAGError) -> Dict[str, Any]:
    return {"code": error.code.value, "message": error.message, "recoverable": error.recoverable}

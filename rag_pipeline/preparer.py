"""
preparer.py
===========
Turn search hits into the bounded, deduplicated context handed to the
completion provider.

The pipeline state is an immutable value (``PipelineState``).  Each stage is
a function from one state to the next:

  extract_texts   documents   -> narrowed text entries
  fetch_related   entries     -> + related observations (one level deep)
  deduplicate     entries     -> one entry per (document, text prefix)
  rerank          entries     -> LLM-scored and sorted, or unchanged
  limit           entries     -> first N
  build           entries     -> PreparedDocuments

``DocumentPreparer`` wraps the stages so they chain; every call returns a new
preparer and leaves the previous one untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from rag_pipeline.chunk_extractor import (
    ExtractedChunk,
    document_header,
    extract_relevant_chunks,
    format_chunks_for_context,
)
from rag_pipeline.documents import ClinicalDocument
from rag_pipeline.llm_engine import CompletionProvider
from rag_pipeline.related import RelatedDocumentsFetcher
from rag_pipeline.reranker import Reranker, rerank_documents
from rag_pipeline.settings import (
    DISABLE_OLLAMA_RERANKING,
    MAX_FINAL_CONTEXT_DOCUMENTS,
    RELATED_LABS_LIMIT,
    RELEVANCE_SCORE_THRESHOLD,
    TOP_RESULTS_FALLBACK,
)
from rag_pipeline.vectorizer import VectorizedDocument, prepare_clinical_document_for_vectorization
from vector_store import TextItem

logger = logging.getLogger(__name__)

LARGE_ATTACHMENT_KIND = "DocumentReference"
DEDUP_PREFIX_CHARS = 100

Vectorizer = Callable[[ClinicalDocument], VectorizedDocument]
ChunkExtractFn = Callable[[ClinicalDocument, Optional[str], Sequence[str]], List[ExtractedChunk]]
ChunkFormatFn = Callable[[Sequence[ExtractedChunk]], str]


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PreparedEntry:
    text: str
    source_doc: ClinicalDocument
    chunk_ids: Tuple[str, ...] = ()
    is_related: bool = False
    relevance_score: Optional[float] = None


@dataclass(frozen=True)
class PipelineState:
    entries: Tuple[PreparedEntry, ...] = ()
    processed_ids: FrozenSet[str] = frozenset()


@dataclass
class DocumentTextMetadata:
    relevance_score: Optional[float] = None
    chunk_ids: List[str] = field(default_factory=list)
    is_related: bool = False


@dataclass
class DocumentText:
    id: str
    text: str
    source_doc_id: str
    resource_type: Optional[str] = None
    date: Optional[str] = None
    metadata: DocumentTextMetadata = field(default_factory=DocumentTextMetadata)


@dataclass
class PreparedDocuments:
    texts: List[DocumentText] = field(default_factory=list)
    source_docs: List[ClinicalDocument] = field(default_factory=list)


@dataclass(frozen=True)
class PreparationParams:
    documents: Tuple[ClinicalDocument, ...]
    relevant_chunk_ids: Tuple[str, ...] = ()
    query: str = ""
    user_id: str = ""
    attachment_map: Optional[Dict[str, str]] = None
    provider: Optional[CompletionProvider] = None
    enable_reranking: bool = True


@dataclass(frozen=True)
class PreparerDependencies:
    vectorizer: Vectorizer = prepare_clinical_document_for_vectorization
    related_fetcher: Optional[RelatedDocumentsFetcher] = None
    extract_chunks: ChunkExtractFn = extract_relevant_chunks
    format_chunks: ChunkFormatFn = format_chunks_for_context
    reranker: Reranker = rerank_documents


# ---------------------------------------------------------------------------
# Option accessors
# ---------------------------------------------------------------------------

def attachment_text_for(document: ClinicalDocument, attachment_map: Optional[Dict[str, str]] = None) -> Optional[str]:
    """Extracted attachment text: the caller's map first, then the document's own field."""
    if attachment_map and attachment_map.get(document.id):
        return attachment_map[document.id]
    return document.attachment_text or None


def relevant_chunks(chunks: Sequence[TextItem], relevant_ids: Sequence[str]) -> Optional[List[TextItem]]:
    """The chunks whose id matched the search, or None when none did."""
    if not relevant_ids:
        return None
    wanted = set(relevant_ids)
    matched = [c for c in chunks if c.id in wanted]
    return matched or None


def narrow_to_relevant_chunks(chunks: Sequence[TextItem], relevant_ids: Sequence[str]) -> List[TextItem]:
    """Matched chunks when any matched, otherwise the whole document."""
    matched = relevant_chunks(chunks, relevant_ids)
    return matched if matched is not None else list(chunks)


def _score(entry: PreparedEntry) -> float:
    return entry.relevance_score or 0.0


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def extract_texts(
    state: PipelineState,
    params: PreparationParams,
    deps: PreparerDependencies,
) -> PipelineState:
    entries = list(state.entries)
    processed = set(state.processed_ids)

    for doc in params.documents:
        if doc.id in processed:
            continue
        processed.add(doc.id)

        if doc.fhir_resource_type == LARGE_ATTACHMENT_KIND and params.relevant_chunk_ids:
            attachment = attachment_text_for(doc, params.attachment_map)
            extracted = deps.extract_chunks(doc, attachment, params.relevant_chunk_ids) if attachment else []
            if extracted:
                entries.append(PreparedEntry(
                    text       = document_header(doc) + deps.format_chunks(extracted),
                    source_doc = doc,
                    chunk_ids  = tuple(c.chunk_id for c in extracted),
                ))
                continue

        chunks = deps.vectorizer(doc).items
        for chunk in narrow_to_relevant_chunks(chunks, params.relevant_chunk_ids):
            entries.append(PreparedEntry(text=chunk.text, source_doc=doc, chunk_ids=(chunk.id,)))

    return PipelineState(entries=tuple(entries), processed_ids=frozenset(processed))


async def fetch_related(
    state: PipelineState,
    params: PreparationParams,
    deps: PreparerDependencies,
) -> PipelineState:
    fetcher = deps.related_fetcher
    if fetcher is None:
        return state

    related: List[PreparedEntry] = []
    processed = set(state.processed_ids)
    expanded: set = set()

    for entry in state.entries:
        doc = entry.source_doc
        if doc.id in expanded:
            continue
        expanded.add(doc.id)

        kind = doc.fhir_resource_type
        if kind == "Observation":
            related_docs = await fetcher.get_related_by_code(doc.loinc_coding, params.user_id, RELATED_LABS_LIMIT)
        elif kind == "DiagnosticReport":
            related_docs, _ = await fetcher.get_related_for_report(doc, params.user_id)
        else:
            continue

        for related_doc in related_docs:
            if related_doc.id in processed:
                continue
            processed.add(related_doc.id)
            for chunk in deps.vectorizer(related_doc).items:
                related.append(PreparedEntry(
                    text       = chunk.text,
                    source_doc = related_doc,
                    chunk_ids  = (chunk.id,),
                    is_related = True,
                ))

    if related:
        logger.debug("Added %d related texts", len(related))
    return PipelineState(entries=state.entries + tuple(related), processed_ids=frozenset(processed))


def deduplicate(state: PipelineState) -> PipelineState:
    """
    One entry per (source document, first 100 chars lowercased and trimmed).

    On collision the higher relevance score wins (missing counts as 0); equal
    scores keep the longer text.  Position is the first occurrence's.
    """
    unique: Dict[Tuple[str, str], PreparedEntry] = {}
    for entry in state.entries:
        key = (entry.source_doc.id, entry.text[:DEDUP_PREFIX_CHARS].lower().strip())
        existing = unique.get(key)
        if existing is None:
            unique[key] = entry
        elif _score(entry) > _score(existing):
            unique[key] = entry
        elif _score(entry) == _score(existing) and len(entry.text) > len(existing.text):
            unique[key] = entry
    return replace(state, entries=tuple(unique.values()))


def _rerank_skip_reason(state: PipelineState, params: PreparationParams) -> Optional[str]:
    if not params.enable_reranking:
        return "reranking disabled"
    if not params.query:
        return "no query"
    config = params.provider.get_config() if params.provider is not None else None
    if config is None:
        return "no AI config"
    if not state.entries:
        return "no documents"
    if config.ai_provider == "ollama" and DISABLE_OLLAMA_RERANKING:
        return "reranking disabled for Ollama"
    if config.skip_reranking:
        return "provider has no rerank model"
    return None


async def rerank(
    state: PipelineState,
    params: PreparationParams,
    deps: PreparerDependencies,
) -> PipelineState:
    reason = _rerank_skip_reason(state, params)
    if reason is not None:
        logger.info("Skipping reranking - %s", reason)
        return state

    texts = [e.text for e in state.entries]
    logger.info("Starting reranking of %d texts", len(texts))
    try:
        result = await deps.reranker(texts, params.query, params.provider, RELEVANCE_SCORE_THRESHOLD)
    except Exception as exc:
        logger.warning("Reranking failed, continuing without reranking: %s", exc)
        return state

    if result.reranking_applied and result.documents:
        scores = {d.text: d.relevance_score for d in result.documents}
        scored = [replace(e, relevance_score=scores[e.text]) for e in state.entries if e.text in scores]
        scored.sort(key=_score, reverse=True)
        logger.info(
            "Reranking complete. Filtered from %d to %d texts (top scores: %s)",
            len(texts), len(scored), ", ".join(f"{_score(e):.2f}" for e in scored[:3]),
        )
        return replace(state, entries=tuple(scored))

    if not result.documents and texts:
        logger.info("Reranking filtered out all texts, keeping the first %d", TOP_RESULTS_FALLBACK)
        return replace(state, entries=state.entries[:TOP_RESULTS_FALLBACK])

    return state


def limit(state: PipelineState, max_documents: Optional[int] = None) -> PipelineState:
    cap = max_documents or MAX_FINAL_CONTEXT_DOCUMENTS
    if len(state.entries) <= cap:
        return state
    return replace(state, entries=state.entries[:cap])


def build(state: PipelineState) -> PreparedDocuments:
    texts: List[DocumentText] = []
    sources: Dict[str, ClinicalDocument] = {}
    for entry in state.entries:
        doc = entry.source_doc
        sources.setdefault(doc.id, doc)
        texts.append(DocumentText(
            id            = entry.chunk_ids[0] if entry.chunk_ids else doc.id,
            text          = entry.text,
            source_doc_id = doc.id,
            resource_type = doc.fhir_resource_type or None,
            date          = doc.date,
            metadata      = DocumentTextMetadata(
                relevance_score = entry.relevance_score,
                chunk_ids       = list(entry.chunk_ids),
                is_related      = entry.is_related,
            ),
        ))
    return PreparedDocuments(texts=texts, source_docs=list(sources.values()))


# ---------------------------------------------------------------------------
# Chaining wrapper
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentPreparer:
    """
    Usage::

        preparer = DocumentPreparer(params, deps)
        preparer = await preparer.extract_texts()
        preparer = await preparer.fetch_related()
        preparer = await preparer.deduplicate().rerank()
        prepared = preparer.limit(20).build()
    """

    params: PreparationParams
    deps: PreparerDependencies = field(default_factory=PreparerDependencies)
    state: PipelineState = field(default_factory=PipelineState)

    def _with(self, state: PipelineState) -> "DocumentPreparer":
        return replace(self, state=state)

    async def extract_texts(self) -> "DocumentPreparer":
        return self._with(extract_texts(self.state, self.params, self.deps))

    async def fetch_related(self) -> "DocumentPreparer":
        return self._with(await fetch_related(self.state, self.params, self.deps))

    def deduplicate(self) -> "DocumentPreparer":
        return self._with(deduplicate(self.state))

    async def rerank(self) -> "DocumentPreparer":
        return self._with(await rerank(self.state, self.params, self.deps))

    def limit(self, max_documents: Optional[int] = None) -> "DocumentPreparer":
        return self._with(limit(self.state, max_documents))

    def build(self) -> PreparedDocuments:
        return build(self.state)

"""
retriever.py
============
Similarity search over one user's indexed clinical documents.

Strategy:
  1. All search terms are joined into a single query string and sent through
     one ``VectorStore.similarity_search`` call, scoped by the caller's filter
     (normally the user filter).
  2. Every chunk hit is resolved to its parent ClinicalDocument through the
     DocumentLookup.  Documents are deduplicated by id (first hit decides the
     order); every chunk id is kept so the preparer can narrow documents down
     to the chunks that matched.

``iterative_search`` repeats the search up to ``max_iterations`` times,
optionally widening the term set through an ``expand_terms`` callback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Set

from rag_pipeline.documents import ClinicalDocument
from rag_pipeline.settings import DEFAULT_MAX_ITERATIONS, DEFAULT_SEARCH_LIMIT
from vector_store import FilterOptions, VectorStore

logger = logging.getLogger(__name__)

ExpandTermsFn = Callable[[List[str], int], List[str]]


class DocumentLookup(Protocol):
    def find_one(self, document_id: str) -> Awaitable[Optional[ClinicalDocument]]:
        ...


@dataclass
class DocumentSearchResult:
    documents: List[ClinicalDocument] = field(default_factory=list)
    relevant_chunk_ids: List[str] = field(default_factory=list)
    search_terms: List[str] = field(default_factory=list)
    confidence: float = 0.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def search_documents(
    search_terms: List[str],
    store: VectorStore,
    lookup: DocumentLookup,
    filter_options: Optional[FilterOptions] = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> DocumentSearchResult:
    """
    Run one similarity search and hydrate the hits into source documents.

    Parameters
    ----------
    search_terms    : one or more query strings, joined with a space
    store           : the vector store to search
    lookup          : resolves a document id to its ClinicalDocument
    filter_options  : metadata filter, e.g. ``FilterOptions.for_user(uid)``
    limit           : number of chunks requested from the store

    Returns
    -------
    DocumentSearchResult; ``confidence`` is 1.0 when any document was found.
    """
    query = search_terms[0] if len(search_terms) == 1 else " ".join(search_terms)
    logger.info("Performing vector search with query: %r (limit: %d)", query, limit)

    result = await store.similarity_search(query, k=limit, filter_options=filter_options)
    logger.debug("Vector search returned %d results", len(result.similar_items))

    documents: List[ClinicalDocument] = []
    relevant_chunk_ids: List[str] = []
    seen_doc_ids: Set[str] = set()

    for hit in result.similar_items:
        doc_id = hit.document_id
        if doc_id and doc_id not in seen_doc_ids:
            doc = await lookup.find_one(doc_id)
            if doc is not None:
                documents.append(doc)
                seen_doc_ids.add(doc_id)
            else:
                logger.debug("Chunk %s points at missing document %s", hit.id, doc_id)
        relevant_chunk_ids.append(hit.id)

    logger.info(
        "Search complete. Found %d unique documents from %d chunks",
        len(documents), len(relevant_chunk_ids),
    )
    return DocumentSearchResult(
        documents          = documents,
        relevant_chunk_ids = relevant_chunk_ids,
        search_terms       = list(search_terms),
        confidence         = 1.0 if documents else 0.0,
    )


async def iterative_search(
    initial_terms: List[str],
    store: VectorStore,
    lookup: DocumentLookup,
    filter_options: Optional[FilterOptions] = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    expand_terms: Optional[ExpandTermsFn] = None,
    stop_on_stagnation: bool = False,
) -> DocumentSearchResult:
    """
    Accumulate documents over several search rounds.

    Stops once ``limit`` documents are collected or ``max_iterations`` rounds
    ran (0 means DEFAULT_MAX_ITERATIONS).  A round that adds neither a document nor a term does not end the
    loop unless ``stop_on_stagnation`` is set.
    """
    all_documents: List[ClinicalDocument] = []
    all_doc_ids: Set[str] = set()
    all_chunk_ids: List[str] = []
    all_terms: List[str] = list(dict.fromkeys(initial_terms))

    rounds = max_iterations or DEFAULT_MAX_ITERATIONS
    for iteration in range(rounds):
        iteration_terms = expand_terms(list(all_terms), iteration) if expand_terms else list(all_terms)

        result = await search_documents(iteration_terms, store, lookup, filter_options, limit=limit)

        new_docs = [d for d in result.documents if d.id not in all_doc_ids]
        for doc in new_docs:
            all_documents.append(doc)
            all_doc_ids.add(doc.id)
        all_chunk_ids.extend(result.relevant_chunk_ids)

        new_terms = [t for t in iteration_terms if t not in all_terms]
        all_terms.extend(dict.fromkeys(new_terms))

        logger.debug(
            "Search iteration %d/%d: %d new documents, %d new terms (%d total documents)",
            iteration + 1, rounds, len(new_docs), len(new_terms), len(all_documents),
        )

        if len(all_documents) >= limit:
            break
        if stop_on_stagnation and not new_docs and not new_terms:
            logger.info("Stopping iterative search after round %d: nothing new found", iteration + 1)
            break

    return DocumentSearchResult(
        documents          = all_documents,
        relevant_chunk_ids = list(dict.fromkeys(all_chunk_ids)),
        search_terms       = all_terms,
        confidence         = 1.0 if all_documents else 0.0,
    )

"""
reranker.py
===========
LLM relevance scoring of candidate record texts.

Texts are sent to the provider's rerank model in batches of BATCH_SIZE; the
model returns ``{"1": score, "2": score, ...}`` with scores in 0-10.  A batch
whose answer is malformed is retried once with the validation error appended
to the system prompt, and gets descending fallback scores around 5 if the
retry fails too.  The scored set is then cut with a dynamic threshold
(``select_top_documents_with_threshold``).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Tuple

from rag_pipeline.llm_engine import CompletionProvider
from rag_pipeline.prompts import create_reranking_prompt, format_documents_for_prompt
from rag_pipeline.settings import RELEVANCE_SCORE_THRESHOLD, RERANK_TEMPERATURE

logger = logging.getLogger(__name__)

BATCH_SIZE = 5
MAX_PARALLEL_BATCHES = 4
DEFAULT_TARGET_DOCUMENTS = 25
FALLBACK_SCORE = 5.0


@dataclass
class RerankedDocument:
    text: str
    relevance_score: float
    relevance_reason: str = "Model score"


@dataclass
class RerankResult:
    reranking_applied: bool
    documents: List[RerankedDocument] = field(default_factory=list)


@dataclass
class DocumentBatch:
    documents: List[str]
    start_index: int


class Reranker(Protocol):
    async def __call__(
        self,
        texts: List[str],
        query: str,
        provider: CompletionProvider,
        relevance_threshold: float = RELEVANCE_SCORE_THRESHOLD,
        target_count: Optional[int] = None,
    ) -> RerankResult:
        ...


class RerankValidationError(ValueError):
    """The rerank model's answer does not map every document to a 0-10 score."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def create_document_batches(documents: List[str], batch_size: int = 10) -> List[DocumentBatch]:
    return [
        DocumentBatch(documents=documents[i:i + batch_size], start_index=i)
        for i in range(0, len(documents), batch_size)
    ]


def select_top_documents_with_threshold(
    ranked: List[RerankedDocument],
    target_count: int,
    min_threshold: float,
) -> Tuple[List[RerankedDocument], float]:
    """
    Pick about ``target_count`` documents, preferring those at or above
    ``min_threshold``.  Returns the selection and the effective threshold.

    * enough above threshold: the top ``target_count`` plus everything tied
      with the cutoff score, unless that would exceed 1.5x the target
    * some above threshold: all of them, topped up from below
    * none above threshold: the best ``target_count`` regardless
    """
    ordered = sorted(ranked, key=lambda d: d.relevance_score, reverse=True)
    if not ordered:
        return [], min_threshold

    above = [d for d in ordered if d.relevance_score >= min_threshold]

    if len(above) >= target_count:
        selected = above[:target_count]
        if not selected:
            return [], min_threshold
        cutoff = selected[-1].relevance_score
        at_cutoff = [d for d in above if d.relevance_score >= cutoff]
        if len(at_cutoff) > target_count * 1.5:
            return selected, cutoff
        return at_cutoff, cutoff

    if above:
        needed = target_count - len(above)
        combined = above + ordered[len(above):len(above) + needed]
        return combined, combined[-1].relevance_score

    selected = ordered[:target_count]
    return selected, (selected[-1].relevance_score if selected else 0.0)


def _parse_score_map(response: Any, batch: DocumentBatch) -> List[RerankedDocument]:
    if not isinstance(response, dict):
        raise RerankValidationError(
            f"Unexpected response type: {type(response).__name__}. Expected JSON object."
        )

    results: List[RerankedDocument] = []
    errors: List[str] = []
    for index, text in enumerate(batch.documents, start=1):
        score = response.get(str(index))
        if score is None:
            errors.append(f"Missing score for document {index}")
            continue
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= 10:
            errors.append(f"Invalid score for document {index}: {score} (must be 0-10)")
            continue
        results.append(RerankedDocument(text=text, relevance_score=float(score)))

    if errors:
        raise RerankValidationError("; ".join(errors))
    return results


def _fallback_scores(batch: DocumentBatch, reason: str) -> List[RerankedDocument]:
    size = len(batch.documents)
    return [
        RerankedDocument(
            text             = text,
            relevance_score  = FALLBACK_SCORE + (size - index) * 0.1,
            relevance_reason = f"Fallback - {reason}",
        )
        for index, text in enumerate(batch.documents)
    ]


async def _score_batch(
    batch: DocumentBatch,
    system_prompt: str,
    provider: CompletionProvider,
) -> List[RerankedDocument]:
    user_prompt = f"Evaluate these documents:\n\n{format_documents_for_prompt(batch.documents)}"
    previous_error: Optional[str] = None

    for attempt in range(2):
        prompt = system_prompt
        if previous_error:
            prompt = (
                f"{system_prompt}\n\nYour previous response had an error: {previous_error}\n"
                "Please correct it and return the proper format."
            )
        try:
            response = await provider.complete_json(prompt, user_prompt, temperature=RERANK_TEMPERATURE)
            return _parse_score_map(response, batch)
        except Exception as exc:
            previous_error = str(exc)
            if attempt == 0:
                logger.info("Rerank batch at %d failed (%s), retrying with feedback", batch.start_index, exc)

    logger.warning("Rerank batch at %d failed after retry: %s", batch.start_index, previous_error)
    return _fallback_scores(batch, "failed after retry")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def rerank_documents(
    texts: List[str],
    query: str,
    provider: CompletionProvider,
    relevance_threshold: float = RELEVANCE_SCORE_THRESHOLD,
    target_count: Optional[int] = None,
) -> RerankResult:
    if not texts:
        return RerankResult(reranking_applied=False)

    target = target_count or DEFAULT_TARGET_DOCUMENTS
    try:
        system_prompt = create_reranking_prompt(query)
        batches = create_document_batches(texts, BATCH_SIZE)

        ranked: List[RerankedDocument] = []
        if len(batches) <= MAX_PARALLEL_BATCHES:
            results = await asyncio.gather(*(_score_batch(b, system_prompt, provider) for b in batches))
            for batch_result in results:
                ranked.extend(batch_result)
        else:
            for batch in batches:
                ranked.extend(await _score_batch(batch, system_prompt, provider))

        selected, threshold = select_top_documents_with_threshold(ranked, target, relevance_threshold)
        logger.info(
            "Reranking kept %d of %d texts (effective threshold %.2f)",
            len(selected), len(texts), threshold,
        )
        return RerankResult(reranking_applied=True, documents=selected)
    except Exception as exc:
        logger.error("Reranking failed, returning texts unranked: %s", exc, exc_info=True)
        return RerankResult(
            reranking_applied = False,
            documents         = [
                RerankedDocument(text=t, relevance_score=FALLBACK_SCORE, relevance_reason="Fallback - ranking unavailable")
                for t in texts
            ],
        )

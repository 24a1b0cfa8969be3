"""
related.py
==========
Expand a search hit with the clinical documents that belong next to it:

  Observation       other results for the same LOINC code (trend context)
  DiagnosticReport  the observations listed in ``resource.result``
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Dict, List, Protocol, Set, Tuple

from rag_pipeline.documents import ClinicalDocument, DocumentRepository

logger = logging.getLogger(__name__)

ABNORMAL_INTERPRETATION_CODES = {"H", "HH", "L", "LL", "A", "AA"}


class RelatedDocumentsFetcher(Protocol):
    def get_related_by_code(
        self, codes: List[str], user_id: str, limit: int
    ) -> Awaitable[List[ClinicalDocument]]:
        ...

    def get_related_for_report(
        self, report: ClinicalDocument, user_id: str
    ) -> Awaitable[Tuple[List[ClinicalDocument], bool]]:
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _reference_candidates(reference: str) -> Set[str]:
    """``Observation/1`` for both relative and absolute references."""
    ref = reference.strip().rstrip("/")
    parts = ref.split("/")
    candidates = {ref}
    if len(parts) >= 2:
        candidates.add("/".join(parts[-2:]))
    return candidates


def _interpretation_codes(resource: Dict[str, Any]) -> List[str]:
    interpretation = resource.get("interpretation")
    concepts = interpretation if isinstance(interpretation, list) else [interpretation]
    codes: List[str] = []
    for concept in concepts:
        if not isinstance(concept, dict):
            continue
        for coding in concept.get("coding") or []:
            if isinstance(coding, dict) and coding.get("code"):
                codes.append(str(coding["code"]).upper())
    return codes


def _range_bound(bound: Any) -> Any:
    if isinstance(bound, dict):
        return bound.get("value")
    return None


def is_out_of_range(document: ClinicalDocument) -> bool:
    """True when an observation is flagged abnormal or its value is outside its reference range."""
    resource = document.resource
    if ABNORMAL_INTERPRETATION_CODES.intersection(_interpretation_codes(resource)):
        return True

    value = (resource.get("valueQuantity") or {}).get("value")
    if not isinstance(value, (int, float)):
        return False
    for ref_range in resource.get("referenceRange") or []:
        low = _range_bound(ref_range.get("low"))
        high = _range_bound(ref_range.get("high"))
        if isinstance(low, (int, float)) and value < low:
            return True
        if isinstance(high, (int, float)) and value > high:
            return True
    return False


# ---------------------------------------------------------------------------
# Repository-backed fetcher
# ---------------------------------------------------------------------------

class RepositoryRelatedFetcher:
    def __init__(self, repository: DocumentRepository):
        self._repository = repository

    async def get_related_by_code(self, codes: List[str], user_id: str, limit: int) -> List[ClinicalDocument]:
        """Observations sharing a LOINC code, oldest first, one per date."""
        if not codes:
            return []
        docs = await self._repository.find_by_loinc(codes, user_id)
        docs.sort(key=lambda d: d.date or "")

        seen_dates: Set[str] = set()
        unique: List[ClinicalDocument] = []
        for doc in docs:
            key = doc.date or ""
            if key in seen_dates:
                continue
            seen_dates.add(key)
            unique.append(doc)
            if limit and len(unique) >= limit:
                break
        return unique

    async def get_related_for_report(
        self, report: ClinicalDocument, user_id: str
    ) -> Tuple[List[ClinicalDocument], bool]:
        """Observations referenced by a DiagnosticReport, and whether any is abnormal."""
        urls: Set[str] = set()
        for result in report.resource.get("result") or []:
            if isinstance(result, dict) and result.get("reference"):
                urls.update(_reference_candidates(str(result["reference"])))
        if not urls:
            return [], False

        docs = await self._repository.find_by_fhir_urls(sorted(urls), user_id)
        docs.sort(key=lambda d: d.loinc_coding[0] if d.loinc_coding else "", reverse=True)
        has_abnormal = any(is_out_of_range(d) for d in docs)
        logger.debug(
            "Report %s resolved %d linked observations (abnormal=%s)",
            report.id, len(docs), has_abnormal,
        )
        return docs, has_abnormal

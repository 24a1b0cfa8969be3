"""
filters.py
==========
Metadata include/exclude filtering with per-user isolation.

A filter on ``metadata.user_id`` is resolved against the record's *owner*:
the top-level ``user_id`` when the record has one, otherwise the legacy
``metadata.user_id``.  A top-level owner always wins, so a record migrated to
user B can never be returned to user A through a stale metadata value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from vector_store.records import VectorRecord

_USER_KEY = "user_id"


@dataclass
class FilterCriteria:
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FilterOptions:
    include: Optional[FilterCriteria] = None
    exclude: Optional[FilterCriteria] = None

    @classmethod
    def for_user(cls, user_id: str) -> "FilterOptions":
        return cls(include=FilterCriteria(metadata={_USER_KEY: user_id}))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["FilterOptions"]:
        if not data:
            return None
        include = data.get("include")
        exclude = data.get("exclude")
        return cls(
            include = FilterCriteria(dict(include.get("metadata") or {})) if include else None,
            exclude = FilterCriteria(dict(exclude.get("metadata") or {})) if exclude else None,
        )


def owner_of(record: VectorRecord) -> Optional[str]:
    """The user a record belongs to: top-level ``user_id``, else ``metadata.user_id``."""
    if record.user_id:
        return record.user_id
    return record.metadata.user_id


def matches_criteria(record: VectorRecord, criteria: FilterCriteria) -> bool:
    for key, expected in criteria.metadata.items():
        if key == _USER_KEY:
            if owner_of(record) != expected:
                return False
        elif record.metadata.get(key) != expected:
            return False
    return True


def filter_records(
    records: Iterable[VectorRecord],
    options: Optional[FilterOptions] = None,
) -> List[VectorRecord]:
    """Apply include then exclude criteria, preserving insertion order."""
    selected = list(records)
    if options is None:
        return selected
    if options.include is not None:
        selected = [r for r in selected if matches_criteria(r, options.include)]
    if options.exclude is not None:
        selected = [r for r in selected if not matches_criteria(r, options.exclude)]
    return selected

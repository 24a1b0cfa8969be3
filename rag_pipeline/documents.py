"""
documents.py
============
Clinical source documents and the repository that serves them to the
pipeline.

A ClinicalDocument wraps one FHIR bundle entry (``content_type`` JSON) or one
markup document (``application/xml`` or plain text).  The repository is the
DocumentLookup the retriever hydrates chunk hits with, and the data source
the related-document fetcher and the indexer page through.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
XML_CONTENT_TYPE = "application/xml"


@dataclass
class ClinicalDocument:
    id: str
    user_id: str
    resource_type: str = ""
    content_type: str = JSON_CONTENT_TYPE
    raw: Any = None                   # bundle entry dict, or markup string
    display_name: Optional[str] = None
    date: Optional[str] = None
    fhir_url: Optional[str] = None    # "ResourceType/id", target of report references
    loinc_coding: List[str] = field(default_factory=list)
    attachment_text: Optional[str] = None

    @property
    def resource(self) -> Dict[str, Any]:
        """The FHIR resource of a JSON entry, ``{}`` for markup documents."""
        if isinstance(self.raw, dict):
            resource = self.raw.get("resource")
            if isinstance(resource, dict):
                return resource
        return {}

    @property
    def fhir_resource_type(self) -> str:
        return str(self.resource.get("resourceType") or self.resource_type or "")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClinicalDocument":
        return cls(
            id              = str(data["id"]),
            user_id         = str(data.get("user_id") or ""),
            resource_type   = data.get("resource_type") or "",
            content_type    = data.get("content_type") or JSON_CONTENT_TYPE,
            raw             = data.get("raw"),
            display_name    = data.get("display_name"),
            date            = data.get("date"),
            fhir_url        = data.get("fhir_url"),
            loinc_coding    = list(data.get("loinc_coding") or []),
            attachment_text = data.get("attachment_text"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":              self.id,
            "user_id":         self.user_id,
            "resource_type":   self.resource_type,
            "content_type":    self.content_type,
            "raw":             self.raw,
            "display_name":    self.display_name,
            "date":            self.date,
            "fhir_url":        self.fhir_url,
            "loinc_coding":    list(self.loinc_coding),
            "attachment_text": self.attachment_text,
        }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class DocumentRepository:
    """
    In-memory collection of ClinicalDocuments keyed by id.

    With ``directory`` set, the collection is also kept in
    ``<directory>/clinical_documents.json``; load happens on first use and
    every upsert rewrites the file off the event loop.
    """

    def __init__(self, directory: Optional[str] = None):
        self._docs: Dict[str, ClinicalDocument] = {}
        self._file_path: Optional[str] = None
        self._loaded = directory is None
        self._lock = asyncio.Lock()
        if directory:
            Path(directory).mkdir(parents=True, exist_ok=True)
            self._file_path = str(Path(directory) / "clinical_documents.json")

    def _load(self) -> Dict[str, ClinicalDocument]:
        if not self._file_path or not os.path.exists(self._file_path):
            return {}
        with open(self._file_path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
        docs = [ClinicalDocument.from_dict(d) for d in payload.get("documents", [])]
        return {d.id: d for d in docs}

    def _save(self, rows: List[Dict[str, Any]]) -> None:
        tmp_path = self._file_path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump({"documents": rows}, fh, ensure_ascii=False)
        os.replace(tmp_path, self._file_path)

    async def initialize(self) -> None:
        async with self._lock:
            if self._loaded:
                return
            self._docs = await asyncio.to_thread(self._load)
            self._loaded = True
            logger.info("Clinical documents loaded from %s (%d documents)", self._file_path, len(self._docs))

    async def upsert_many(self, documents: Iterable[ClinicalDocument]) -> int:
        await self.initialize()
        count = 0
        async with self._lock:
            for doc in documents:
                self._docs[doc.id] = copy.deepcopy(doc)
                count += 1
            if self._file_path:
                rows = [d.to_dict() for d in self._docs.values()]
                await asyncio.to_thread(self._save, rows)
        return count

    async def find_one(self, document_id: str) -> Optional[ClinicalDocument]:
        await self.initialize()
        doc = self._docs.get(document_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def count(self, user_id: Optional[str] = None) -> int:
        await self.initialize()
        if user_id is None:
            return len(self._docs)
        return sum(1 for d in self._docs.values() if d.user_id == user_id)

    async def page(self, offset: int, limit: int, user_id: Optional[str] = None) -> List[ClinicalDocument]:
        """Documents in insertion order, ``limit`` at a time."""
        await self.initialize()
        docs = [d for d in self._docs.values() if user_id is None or d.user_id == user_id]
        return [copy.deepcopy(d) for d in docs[offset:offset + limit]]

    async def find_by_loinc(self, codes: List[str], user_id: str) -> List[ClinicalDocument]:
        await self.initialize()
        wanted = set(codes)
        if not wanted:
            return []
        return [
            copy.deepcopy(d) for d in self._docs.values()
            if d.user_id == user_id and wanted.intersection(d.loinc_coding)
        ]

    async def find_by_fhir_urls(self, urls: List[str], user_id: str) -> List[ClinicalDocument]:
        await self.initialize()
        wanted = set(urls)
        if not wanted:
            return []
        return [
            copy.deepcopy(d) for d in self._docs.values()
            if d.user_id == user_id and d.fhir_url in wanted
        ]

"""
persistence.py
==============
Storage backends behind the in-memory vector store.

The store only needs a filtered ``find`` and a ``bulk_upsert`` of serialised
rows (text excluded).  Two backends ship here:

  InMemoryPersistence  — rows held in a dict (tests, ephemeral sessions)
  JsonFilePersistence  — snapshot + append-only journal on local disk

Filters are flat equality selectors on the indexed fields ``documentId``
and ``user_id``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_INDEXED_FIELDS = ("documentId", "user_id")


def _row_value(row: Dict[str, Any], key: str) -> Any:
    if key == "documentId":
        meta = row.get("metadata") or {}
        return meta.get("documentId") or meta.get("document_id")
    return row.get(key)


def _row_matches(row: Dict[str, Any], selector: Optional[Dict[str, Any]]) -> bool:
    if not selector:
        return True
    for key, expected in selector.items():
        if key not in _INDEXED_FIELDS:
            raise ValueError(f"Unsupported selector field: {key!r}. Supported: {_INDEXED_FIELDS}")
        if _row_value(row, key) != expected:
            return False
    return True


class VectorPersistence(ABC):
    """Key/value collection of serialised vector records."""

    @abstractmethod
    async def find(self, selector: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return every row matching ``selector`` (all rows when empty)."""

    @abstractmethod
    async def bulk_upsert(self, rows: List[Dict[str, Any]]) -> None:
        """Insert or replace rows by ``id``."""

    @abstractmethod
    async def remove(self) -> None:
        """Drop every row in the collection."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryPersistence(VectorPersistence):
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None):
        self._rows: Dict[str, Dict[str, Any]] = {}
        for row in rows or []:
            self._rows[row["id"]] = copy.deepcopy(row)
        self.upsert_calls = 0

    async def find(self, selector: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._rows.values() if _row_matches(r, selector)]

    async def bulk_upsert(self, rows: List[Dict[str, Any]]) -> None:
        self.upsert_calls += 1
        for row in rows:
            self._rows[row["id"]] = copy.deepcopy(row)

    async def remove(self) -> None:
        self._rows.clear()

    def __len__(self) -> int:
        return len(self._rows)


# ---------------------------------------------------------------------------
# JSON file backend
# ---------------------------------------------------------------------------

class JsonFilePersistence(VectorPersistence):
    """
    Rows persisted under ``<directory>/``:

      <collection>.json    snapshot of every row
      <collection>.jsonl   journal, one upserted row per line, replayed over the snapshot

    ``bulk_upsert`` only appends the changed rows to the journal, so a search
    that bumps a few hit counters costs a few lines, not a corpus rewrite.
    The snapshot is rewritten (and the journal dropped) once the journal holds
    more lines than ``max(compact_min_lines, row count)``.

    File IO runs in a worker thread so the event loop is never blocked on disk.
    """

    def __init__(self, directory: str, collection: str = "vector_storage", compact_min_lines: int = 1000):
        Path(directory).mkdir(parents=True, exist_ok=True)
        self._file_path = str(Path(directory) / f"{collection}.json")
        self._journal_path = str(Path(directory) / f"{collection}.jsonl")
        self._compact_min_lines = compact_min_lines
        self._rows: Optional[Dict[str, Dict[str, Any]]] = None
        self._journal_lines = 0
        self._lock = asyncio.Lock()

    @property
    def file_path(self) -> str:
        return self._file_path

    @property
    def journal_path(self) -> str:
        return self._journal_path

    def _load(self) -> Tuple[Dict[str, Dict[str, Any]], int]:
        rows: Dict[str, Dict[str, Any]] = {}
        if os.path.exists(self._file_path):
            with open(self._file_path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
            for row in payload.get("rows", []) if isinstance(payload, dict) else []:
                if isinstance(row, dict) and "id" in row:
                    rows[row["id"]] = row

        lines = 0
        if os.path.exists(self._journal_path):
            with open(self._journal_path, "r", encoding="utf-8") as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        row = json.loads(line)
                    except json.JSONDecodeError:
                        # a torn final line from an interrupted append
                        logger.warning("Skipping unreadable journal line in %s", self._journal_path)
                        continue
                    if isinstance(row, dict) and "id" in row:
                        rows[row["id"]] = row
                        lines += 1
        return rows, lines

    def _append(self, rows: List[Dict[str, Any]]) -> None:
        with open(self._journal_path, "a", encoding="utf-8") as fh:
            for row in rows:
                fh.write(json.dumps(row, ensure_ascii=False) + "\n")

    def _compact(self, rows: List[Dict[str, Any]]) -> None:
        tmp_path = self._file_path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump({"rows": rows}, fh, ensure_ascii=False)
        os.replace(tmp_path, self._file_path)
        if os.path.exists(self._journal_path):
            os.remove(self._journal_path)

    async def _ensure_loaded(self) -> Dict[str, Dict[str, Any]]:
        if self._rows is None:
            self._rows, self._journal_lines = await asyncio.to_thread(self._load)
            logger.info(
                "Vector rows loaded from %s (%d rows, %d journal lines)",
                self._file_path, len(self._rows), self._journal_lines,
            )
        return self._rows

    async def find(self, selector: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = await self._ensure_loaded()
            return [copy.deepcopy(r) for r in rows.values() if _row_matches(r, selector)]

    async def bulk_upsert(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        async with self._lock:
            current = await self._ensure_loaded()
            changed = [copy.deepcopy(row) for row in rows]
            for row in changed:
                current[row["id"]] = row
            await asyncio.to_thread(self._append, changed)
            self._journal_lines += len(changed)

            if self._journal_lines > max(self._compact_min_lines, len(current)):
                await asyncio.to_thread(self._compact, list(current.values()))
                logger.debug("Compacted %s (%d rows)", self._file_path, len(current))
                self._journal_lines = 0

    async def remove(self) -> None:
        async with self._lock:
            self._rows = {}
            self._journal_lines = 0
            for path in (self._file_path, self._journal_path):
                if os.path.exists(path):
                    await asyncio.to_thread(os.remove, path)
        logger.info("Vector collection removed: %s", self._file_path)

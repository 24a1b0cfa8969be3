"""
writer.py
=========
Deferred, coalesced persistence for the vector store.

Callers mark record ids dirty with ``schedule``; one background task drains
the dirty set in batches.  Ids scheduled while a write is in flight are
folded into the next batch instead of spawning a second writer.  ``flush``
awaits the drain, e.g. on application shutdown.

Write failures are logged and dropped: the in-memory set stays authoritative
and the indexer rebuilds anything lost on its next sweep.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, Set

logger = logging.getLogger(__name__)


class DeferredWriter:
    def __init__(self, write: Callable[[Set[str]], Awaitable[None]]):
        self._write = write
        self._pending: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self.completed_writes = 0
        self.failed_writes = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, ids: Iterable[str]) -> None:
        """Mark ids dirty and make sure a drain task is running.  Never blocks."""
        self._pending.update(ids)
        if not self._pending:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        # Let the scheduling coroutine hand its result back before any IO starts.
        await asyncio.sleep(0)
        while self._pending:
            batch, self._pending = self._pending, set()
            try:
                await self._write(batch)
                self.completed_writes += 1
            except Exception as exc:
                self.failed_writes += 1
                logger.warning("Deferred vector write failed for %d records: %s", len(batch), exc)

    async def flush(self) -> None:
        """Wait until every scheduled id has been written (or its write has failed)."""
        while self._task is not None and not self._task.done():
            await self._task

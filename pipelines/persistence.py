"""Debounced index persistence.

Index files change on every crawl cycle, often several times per second
during a burst of live updates. ``DebouncedWriter`` keeps one armed timer
per path; scheduling a new write for a path cancels the pending timer and
replaces the pending content, so a burst collapses into one write of the
latest content once the path has been quiet for ``delay`` seconds.
"""

import asyncio
import logging
from typing import Dict, List, Set, Union

from observability.prometheus_metrics import record_index_write
from sources.store import ContentStore

logger = logging.getLogger(__name__)


class DebouncedWriter:
    """Coalesces repeated writes to the same path into one delayed write."""

    def __init__(self, store: ContentStore, delay: float = 5.0, editable: bool = False):
        """Initialize writer.

        Args:
            store: Store the index files are written to
            delay: Quiet period in seconds before a pending write fires
            editable: Whether the store may be written; writes are dropped otherwise
        """
        self.store = store
        self.delay = delay
        self.editable = editable
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._pending: Dict[str, bytes] = {}
        self._inflight: Set[asyncio.Task] = set()

    def schedule_write(self, path: str, content: Union[str, bytes]) -> None:
        """Arm (or re-arm) the write timer for ``path``. Never blocks."""
        if not self.editable:
            logger.debug(f"Skipping write of {path}: index store is not editable")
            return

        if isinstance(content, str):
            content = content.encode('utf-8')

        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()

        loop = asyncio.get_running_loop()
        self._pending[path] = content
        self._timers[path] = loop.call_later(self.delay, self._fire, path)

    def pending_paths(self) -> List[str]:
        return sorted(self._timers)

    def _fire(self, path: str) -> None:
        self._timers.pop(path, None)
        content = self._pending.pop(path, None)
        if content is None:
            return
        task = asyncio.get_running_loop().create_task(self._write(path, content))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _write(self, path: str, content: bytes) -> None:
        try:
            await self.store.write_file(path, content)
            record_index_write()
            logger.debug(f"Wrote index file {path} ({len(content)} bytes)")
        except Exception as e:
            # The next mutation schedules a fresh write
            logger.error(f"Failed to write index file {path}: {e}")
            record_index_write(error=type(e).__name__)

    async def flush(self) -> None:
        """Write every pending path now and wait for in-flight writes."""
        for path in list(self._timers):
            self._timers.pop(path).cancel()
            content = self._pending.pop(path, None)
            if content is not None:
                await self._write(path, content)

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def cancel_all(self) -> None:
        """Drop all pending writes."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()

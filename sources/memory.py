"""In-memory content store and site network.

Reference implementation of the ``ContentStore``, ``AddressResolver`` and
``SiteConnector`` interfaces. Every write or delete bumps the store version
and appends to a change log, so incremental crawling behaves the same way
it does against a real versioned store. History can be pruned to exercise
the full-enumeration fallback.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .errors import NameResolutionError, NotFoundError, NotOwnerError
from .store import Change, ChangeType, StoreEvent, StoreEventType, StoreMetadata
from .urls import normalize_path, to_domain

logger = logging.getLogger(__name__)


class MemorySubscription:
    """Queue-backed change feed returned by ``MemoryStore.subscribe``."""

    def __init__(self, store: 'MemoryStore'):
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _publish(self, event: StoreEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StoreEvent:
        if self._closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        # Wake any pending reader
        self._queue.put_nowait(None)


class MemoryStore:
    """Versioned file store held in memory."""

    def __init__(self, is_owner: bool = True):
        self.is_owner = is_owner
        self._files: Dict[str, bytes] = {}
        self._log: List[Change] = []
        self._history_floor = 0
        self._modified_time: Optional[datetime] = None
        self._subscribers: List[MemorySubscription] = []
        self.read_count = 0

    @property
    def version(self) -> int:
        return len(self._log)

    async def get_metadata(self) -> StoreMetadata:
        return StoreMetadata(
            version=self.version,
            is_owner=self.is_owner,
            modified_time=self._modified_time
        )

    async def read_file(self, path: str) -> bytes:
        path = normalize_path(path)
        self.read_count += 1
        if path not in self._files:
            raise NotFoundError(path)
        return self._files[path]

    async def write_file(self, path: str, data) -> None:
        if not self.is_owner:
            raise NotOwnerError(f"Cannot write {path}: store is not owned")
        path = normalize_path(path)
        if isinstance(data, str):
            data = data.encode('utf-8')
        self._files[path] = bytes(data)
        self._record(Change(path=path, type=ChangeType.PUT))

    async def delete_file(self, path: str) -> None:
        if not self.is_owner:
            raise NotOwnerError(f"Cannot delete {path}: store is not owned")
        path = normalize_path(path)
        if path not in self._files:
            raise NotFoundError(path)
        del self._files[path]
        self._record(Change(path=path, type=ChangeType.DELETE))

    async def list_directory(self, path: str, recursive: bool = False) -> List[str]:
        prefix = normalize_path(path).rstrip('/') + '/'
        relative = [p[len(prefix):] for p in self._files if p.startswith(prefix)]
        if not relative and prefix != '/':
            raise NotFoundError(path)
        if recursive:
            return sorted(relative)
        return sorted({p.split('/', 1)[0] for p in relative})

    async def history_between(self, start: int, end: int) -> Optional[List[Change]]:
        if start < self._history_floor or start > end or end > self.version:
            return None
        return list(self._log[start:end])

    def prune_history(self, version: Optional[int] = None) -> None:
        """Forget change records at or below ``version`` (default: all)."""
        self._history_floor = self.version if version is None else version
        logger.debug(f"Pruned history up to version {self._history_floor}")

    def subscribe(self) -> MemorySubscription:
        subscription = MemorySubscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: MemorySubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _record(self, change: Change) -> None:
        self._log.append(change)
        self._modified_time = datetime.now(timezone.utc)
        self.notify(StoreEventType.INVALIDATED, change.path)
        self.notify(StoreEventType.CHANGED, change.path)

    def notify(self, event_type: StoreEventType, path: str) -> None:
        """Publish one event to every subscriber without touching the files."""
        for subscription in list(self._subscribers):
            subscription._publish(StoreEvent(event_type, normalize_path(path)))


class MemoryNetwork:
    """A set of in-memory sites addressed by domain.

    Acts as both the address resolver and the site connector.
    """

    def __init__(self):
        self._keys: Dict[str, str] = {}
        self._stores: Dict[str, MemoryStore] = {}
        self.resolve_count = 0

    def add_site(self, domain: str, key: Optional[str] = None) -> MemoryStore:
        domain = to_domain(domain)
        key = key or secrets.token_hex(32)
        store = MemoryStore(is_owner=True)
        self._keys[domain] = key
        self._stores[key] = store
        return store

    def rotate_key(self, domain: str, key: Optional[str] = None) -> MemoryStore:
        """Republish ``domain`` under a new address with an empty store."""
        return self.add_site(domain, key)

    def remove_site(self, domain: str) -> None:
        self._keys.pop(to_domain(domain), None)

    def get_key(self, domain: str) -> str:
        return self._keys[to_domain(domain)]

    async def resolve_address(self, domain: str) -> str:
        self.resolve_count += 1
        key = self._keys.get(domain)
        if key is None:
            raise NameResolutionError(domain, "unknown domain")
        return key

    def open_site(self, address: str) -> MemoryStore:
        store = self._stores.get(address)
        if store is None:
            raise NameResolutionError(address, "unknown address")
        return store

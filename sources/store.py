"""Interfaces for the versioned content stores that sites publish into.

The indexers never talk to a network or a disk directly. Everything they
need from a site goes through a ``ContentStore``: reading and listing files,
enumerating the change log between two versions, and subscribing to change
notifications. Name resolution and store construction are separate
collaborators (``AddressResolver`` and ``SiteConnector``) so hosts can mix
a real resolver with an in-memory store in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, List, Optional, Protocol, runtime_checkable


class ChangeType(str, Enum):
    """Kind of file-level change recorded in a store's history."""
    PUT = "put"
    DELETE = "del"


class StoreEventType(str, Enum):
    """Notifications emitted by a store subscription."""
    INVALIDATED = "invalidated"
    CHANGED = "changed"


@dataclass(frozen=True)
class Change:
    """A single file-level change."""
    path: str
    type: ChangeType = ChangeType.PUT

    @property
    def is_delete(self) -> bool:
        return self.type == ChangeType.DELETE


@dataclass(frozen=True)
class StoreMetadata:
    """Snapshot of a store's version and ownership."""
    version: int
    is_owner: bool = False
    modified_time: Optional[datetime] = None


@dataclass(frozen=True)
class StoreEvent:
    """A change notification for one path."""
    type: StoreEventType
    path: str


@runtime_checkable
class Subscription(Protocol):
    """Live change feed for one store.

    Iterating yields ``StoreEvent`` values until ``close()`` is called.
    ``close()`` is idempotent.
    """

    def __aiter__(self) -> AsyncIterator[StoreEvent]:
        ...

    async def close(self) -> None:
        ...

    @property
    def closed(self) -> bool:
        ...


@runtime_checkable
class ContentStore(Protocol):
    """Versioned file store for one site."""

    async def get_metadata(self) -> StoreMetadata:
        ...

    async def read_file(self, path: str) -> bytes:
        """Return file contents. Raises NotFoundError for missing paths."""
        ...

    async def write_file(self, path: str, data: bytes) -> None:
        ...

    async def delete_file(self, path: str) -> None:
        ...

    async def list_directory(self, path: str, recursive: bool = False) -> List[str]:
        """Return paths relative to ``path``. Raises NotFoundError if missing."""
        ...

    async def history_between(self, start: int, end: int) -> Optional[List[Change]]:
        """Return changes after version ``start`` up to and including ``end``.

        Returns None when the store no longer retains that range.
        """
        ...

    def subscribe(self) -> Subscription:
        ...


@runtime_checkable
class AddressResolver(Protocol):
    """Resolves a human-readable domain to a stable content address."""

    async def resolve_address(self, domain: str) -> str:
        """Raises NameResolutionError when the domain cannot be resolved."""
        ...


@runtime_checkable
class SiteConnector(Protocol):
    """Opens the content store published at a stable address."""

    def open_site(self, address: str) -> ContentStore:
        ...

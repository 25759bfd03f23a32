"""Sources package for the citizen indexer.

Provides the content store interfaces, error types, and the in-memory and
well-known resolver implementations.
"""

from .errors import (
    CitizenError,
    MalformedRecordError,
    NotFoundError,
    NameResolutionError,
    NotOwnerError,
    InvalidDomainError
)
from .store import (
    Change,
    ChangeType,
    StoreEvent,
    StoreEventType,
    StoreMetadata,
    ContentStore,
    Subscription,
    AddressResolver,
    SiteConnector
)
from .memory import MemoryStore, MemoryNetwork, MemorySubscription
from .resolver import WellKnownResolver, parse_well_known
from .urls import to_domain, to_url, normalize_path

__all__ = [
    'CitizenError',
    'MalformedRecordError',
    'NotFoundError',
    'NameResolutionError',
    'NotOwnerError',
    'InvalidDomainError',
    'Change',
    'ChangeType',
    'StoreEvent',
    'StoreEventType',
    'StoreMetadata',
    'ContentStore',
    'Subscription',
    'AddressResolver',
    'SiteConnector',
    'MemoryStore',
    'MemoryNetwork',
    'MemorySubscription',
    'WellKnownResolver',
    'parse_well_known',
    'to_domain',
    'to_url',
    'normalize_path'
]

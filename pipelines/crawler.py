"""Crawl coordinator for citizen sites.

Drives one crawl cycle per site: resolve the domain to its current address,
detect key rotation, compute the changes since the last indexed version,
dispatch them to the feed and social indexes, then advance the watermark
and schedule a debounced save. Only one crawl per domain runs at a time;
a request that finds the domain busy is skipped, not queued.
"""

import asyncio
import copy
import dataclasses
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from config.settings import IndexerConfig
from indexer.feed_index import FeedIndexer
from indexer.schemas import (
    CrawlOptions,
    ProfileRecord,
    SiteIndexState,
    SiteRecord,
    decode_change,
    decode_crawl_options,
    decode_profile,
    decode_site_index
)
from indexer.social_index import SocialGraphIndexer
from observability.logging import get_structured_logger
from observability.prometheus_metrics import live_subscriptions, record_crawl_metrics
from sources.errors import (
    CitizenError,
    MalformedRecordError,
    NameResolutionError,
    NotFoundError,
    NotOwnerError
)
from sources.store import (
    AddressResolver,
    Change,
    ChangeType,
    ContentStore,
    SiteConnector,
    StoreEventType,
    Subscription
)
from sources.urls import normalize_path, to_domain

from .persistence import DebouncedWriter

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component='crawler')

Listener = Callable[[str, Dict[str, Any]], Any]


class CrawlState(str, Enum):
    """Where a domain sits in the crawl cycle."""
    UNINDEXED = "unindexed"
    RESOLVING = "resolving"
    KEY_ROTATED = "key_rotated"
    DIFFING = "diffing"
    DISPATCHING = "dispatching"
    PERSISTING = "persisting"
    IDLE = "idle"
    ERROR = "error"


@dataclass
class SiteCrawlResult:
    """Result of one crawl request."""
    domain: str
    status: str  # indexed | skipped | failed
    version: int = 0
    change_count: int = 0
    strategy: str = 'none'  # history | full | none
    key_rotated: bool = False
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == 'indexed'


class CrawlCoordinator:
    """Incrementally crawls sites into the local index store."""

    def __init__(self,
                 index_store: ContentStore,
                 resolver: AddressResolver,
                 connector: SiteConnector,
                 config: Optional[IndexerConfig] = None,
                 writer: Optional[DebouncedWriter] = None):
        """Initialize coordinator.

        Args:
            index_store: Store the index files are read from and written to
            resolver: Maps a domain to its current address key
            connector: Opens a site store for an address key
            config: Indexer configuration (defaults when omitted)
            writer: Debounced writer for index files (built from config when omitted)
        """
        self.config = config or IndexerConfig()
        self.index_store = index_store
        self.resolver = resolver
        self.connector = connector
        self.writer = writer or DebouncedWriter(index_store, delay=self.config.write_delay)

        self.feed = FeedIndexer(index_store, self.writer,
                                index_path=self.config.feed_index_path,
                                posts_dir=self.config.posts_dir)
        self.social = SocialGraphIndexer(index_store, self.writer,
                                         index_path=self.config.social_index_path,
                                         profile_path=self.config.profile_path)

        self.posts_prefix = normalize_path(self.config.posts_dir).rstrip('/') + '/'
        self.profile_path = normalize_path(self.config.profile_path)
        self.is_editable = False

        self._state = SiteIndexState()
        self._crawl_states: Dict[str, CrawlState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._watch_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []
        self._closing = False

    # Lifecycle

    async def setup(self) -> None:
        """Load persisted index state. A store we do not own is read-only."""
        self._closing = False
        metadata = await self.index_store.get_metadata()
        self.is_editable = metadata.is_owner
        self.writer.editable = self.is_editable
        if not self.is_editable:
            logger.info("Index store is not owned, index updates will not be persisted")

        await self._load()
        await asyncio.gather(self.feed.setup(), self.social.setup())
        logger.info(f"Crawl coordinator ready with {len(self._state.sites)} known sites")

    async def _load(self) -> None:
        path = self.config.site_index_path
        try:
            self._state = decode_site_index(await self.index_store.read_file(path))
        except NotFoundError:
            logger.info(f"No site index at {path}, starting empty")
            self._state = SiteIndexState()
        except MalformedRecordError as e:
            logger.warning(f"Failed to read the site index state: {e}")
            self._state = SiteIndexState()

    def _save(self) -> None:
        self.writer.schedule_write(self.config.site_index_path, json.dumps(self._state.to_dict()))

    async def reset(self) -> None:
        """Forget every site, profile and index entry."""
        await self._close_subscriptions()
        self._state = SiteIndexState()
        self._crawl_states.clear()
        self._save()
        await asyncio.gather(self.feed.reset(), self.social.reset())
        logger.info("Reset crawl state")

    async def close(self) -> None:
        """Stop live watching, finish background work and flush index writes.

        No new subscriptions are opened once closing has started, so a
        recrawl still in flight cannot leave a site watched.
        """
        self._closing = True
        await self._close_subscriptions()
        if self._watch_tasks:
            await asyncio.gather(*list(self._watch_tasks.values()), return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.writer.flush()

    # Crawling

    async def crawl_site(self, url: str, options: Any = None) -> SiteCrawlResult:
        """Crawl one site, or skip it if a crawl for its domain is in flight.

        Raises:
            InvalidDomainError: ``url`` has no usable host name
            NotOwnerError: a store refused a write the crawl depends on
        """
        options = decode_crawl_options(options)
        domain = to_domain(url)

        lock = self._locks.setdefault(domain, asyncio.Lock())
        if lock.locked():
            slog.info("Crawl already in progress, skipping", domain=domain)
            record_crawl_metrics('skipped', 0.0)
            return SiteCrawlResult(domain=domain, status='skipped',
                                   version=self.get_crawled_site(domain).last_indexed_version)

        async with lock:
            return await self._crawl(domain, url, options)

    async def crawl_sites(self, urls: Iterable[str], options: Any = None) -> List[SiteCrawlResult]:
        """Crawl several sites concurrently."""
        urls = list(urls)
        semaphore = asyncio.Semaphore(self.config.max_concurrent_crawls)

        async def bounded(url: str) -> SiteCrawlResult:
            async with semaphore:
                return await self.crawl_site(url, options)

        logger.info(f"Starting crawl of {len(urls)} sites")
        results = await asyncio.gather(*[bounded(url) for url in urls])
        indexed = sum(1 for r in results if r.ok)
        logger.info(f"Crawl completed: {indexed}/{len(results)} sites indexed")
        return list(results)

    async def _crawl(self, domain: str, url: str, options: CrawlOptions) -> SiteCrawlResult:
        result = SiteCrawlResult(domain=domain, status='failed')
        log = slog.bind(domain=domain)
        error_type: Optional[str] = None
        start = time.time()

        try:
            self._set_state(domain, CrawlState.RESOLVING)
            site = self._state.sites.get(domain)
            if site is None:
                site = SiteRecord(domain=domain)
                self._state.sites[domain] = site

            key = await self.resolver.resolve_address(domain)
            store = self.connector.open_site(key)

            if site.address_key and site.address_key != key:
                self._set_state(domain, CrawlState.KEY_ROTATED)
                log.warning("Site key changed, reindexing from scratch",
                            old_key=site.address_key, new_key=key)
                await self._unwatch(domain)
                await asyncio.gather(self.feed.purge_site(domain), self.social.purge_site(domain))
                self._state.profiles.pop(domain, None)
                site = SiteRecord(domain=domain, address_key=key)
                self._state.sites[domain] = site
                result.key_rotated = True

            self._set_state(domain, CrawlState.DIFFING)
            metadata = await store.get_metadata()
            changes, strategy = await self._collect_changes(domain, store, site.last_indexed_version,
                                                            metadata.version)
            log.debug("Collected changes", count=len(changes), strategy=strategy,
                      start=site.last_indexed_version, end=metadata.version)

            self._set_state(domain, CrawlState.DISPATCHING)
            if changes:
                await asyncio.gather(
                    self.feed.apply_changes(domain, changes, options),
                    self.social.apply_changes(domain, changes, options, site_store=store)
                )

            self._set_state(domain, CrawlState.PERSISTING)
            profile = await self._fetch_profile(domain, store)
            if profile is not None:
                self._state.profiles[domain] = profile
            else:
                self._state.profiles.pop(domain, None)
            self._state.sites[domain] = SiteRecord(
                domain=domain,
                address_key=key,
                last_indexed_version=metadata.version,
                display_name=profile.name if profile is not None else ''
            )
            self._save()

            if options.live:
                self._watch(domain, url, store, options)

            self._set_state(domain, CrawlState.IDLE)
            result.status = 'indexed'
            result.version = metadata.version
            result.change_count = len(changes)
            result.strategy = strategy
            log.info("Crawled site", version=metadata.version, changes=len(changes), strategy=strategy)

        except NotOwnerError:
            self._set_state(domain, CrawlState.ERROR)
            error_type = NotOwnerError.__name__
            raise
        except NameResolutionError as e:
            self._set_state(domain, CrawlState.ERROR)
            error_type = type(e).__name__
            result.error = str(e)
            log.warning("Failed to resolve site", error=str(e))
        except CitizenError as e:
            self._set_state(domain, CrawlState.ERROR)
            error_type = type(e).__name__
            result.error = str(e)
            log.error("Failed to crawl site", error=str(e))
        except Exception as e:
            self._set_state(domain, CrawlState.ERROR)
            error_type = type(e).__name__
            result.error = f"{type(e).__name__}: {e}"
            log.exception("Unexpected error crawling site")
        finally:
            result.duration = time.time() - start
            record_crawl_metrics(
                result.status,
                result.duration,
                change_count=result.change_count,
                strategy=result.strategy,
                key_rotated=result.key_rotated,
                error=error_type
            )

        return result

    async def _collect_changes(self, domain: str, store: ContentStore,
                               watermark: int, version: int) -> Tuple[List[Change], str]:
        """Changes between ``watermark`` and ``version``.

        Uses the store's change log when it covers the range, otherwise
        enumerates the site's posts and profile.
        """
        if watermark > 0:
            if version == watermark:
                return [], 'none'
            if version > watermark:
                history = None
                try:
                    history = await store.history_between(watermark, version)
                except Exception as e:
                    logger.warning(f"Failed to read history of {domain}: {e}")
                if history is not None:
                    changes = [c for c in (decode_change(raw) for raw in history) if c is not None]
                    return changes, 'history'
            logger.info(f"History of {domain} unavailable for {watermark}..{version}, "
                        f"falling back to full enumeration")

        changes = await self._enumerate(domain, store)

        if watermark > 0:
            # Deletions cannot be seen in a listing; diff against what we indexed
            listed = {c.path for c in changes}
            for filename in self.feed.list_author_filenames(domain):
                path = self.posts_prefix + filename
                if path not in listed:
                    changes.append(Change(path=path, type=ChangeType.DELETE))

        return changes, 'full'

    async def _enumerate(self, domain: str, store: ContentStore) -> List[Change]:
        try:
            names = await store.list_directory(self.posts_prefix)
        except NotFoundError:
            logger.debug(f"{domain} has no posts directory")
            names = []

        changes = [
            Change(path=normalize_path(self.posts_prefix + name), type=ChangeType.PUT)
            for name in names
        ]
        changes.append(Change(path=self.profile_path, type=ChangeType.PUT))
        return changes

    async def _fetch_profile(self, domain: str, store: ContentStore) -> Optional[ProfileRecord]:
        try:
            raw = await store.read_file(self.profile_path)
        except NotFoundError:
            return decode_profile(None, domain)
        except Exception as e:
            logger.warning(f"Failed to read profile of {domain}: {e}")
            return None

        try:
            return decode_profile(raw, domain)
        except MalformedRecordError as e:
            logger.warning(f"Unparseable profile published by {domain}: {e}")
            return None

    def _set_state(self, domain: str, state: CrawlState) -> None:
        self._crawl_states[domain] = state

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # Un-crawling

    async def uncrawl_site(self, url: str) -> None:
        """Remove a site and everything indexed from it."""
        domain = to_domain(url)
        await self._unwatch(domain)
        await asyncio.gather(self.feed.purge_site(domain), self.social.purge_site(domain))
        self._state.sites.pop(domain, None)
        self._state.profiles.pop(domain, None)
        self._crawl_states.pop(domain, None)
        lock = self._locks.get(domain)
        if lock is not None and not lock.locked():
            del self._locks[domain]
        self._save()
        logger.info(f"Uncrawled {domain}")

    # Live updates

    def add_listener(self, listener: Listener) -> None:
        """Register ``listener(event, payload)``; it may be a coroutine function."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_watching(self, url: str) -> bool:
        return to_domain(url) in self._subscriptions

    def _watch(self, domain: str, url: str, store: ContentStore, options: CrawlOptions) -> None:
        if self._closing or domain in self._subscriptions:
            return
        try:
            subscription = store.subscribe()
        except Exception as e:
            logger.warning(f"Failed to watch {domain}: {e}")
            return

        self._subscriptions[domain] = subscription
        live_subscriptions.inc()
        task = asyncio.create_task(self._consume(domain, url, store, subscription, options))
        self._watch_tasks[domain] = task
        task.add_done_callback(lambda t, d=domain: self._forget_watch_task(d, t))
        logger.info(f"Watching {domain} for changes")

    def _forget_watch_task(self, domain: str, task: asyncio.Task) -> None:
        if self._watch_tasks.get(domain) is task:
            del self._watch_tasks[domain]

    async def _consume(self, domain: str, url: str, store: ContentStore,
                       subscription: Subscription, options: CrawlOptions) -> None:
        index_prefix = normalize_path(self.config.index_dir).rstrip('/') + '/'
        try:
            async for event in subscription:
                if self._closing:
                    break
                if normalize_path(event.path).startswith(index_prefix):
                    continue
                if event.type == StoreEventType.INVALIDATED:
                    self._spawn(self._prefetch(domain, store, event.path))
                elif event.type == StoreEventType.CHANGED:
                    self._spawn(self._recrawl(domain, url, event.path, options))
        except Exception:
            logger.exception(f"Change feed for {domain} failed")

    async def _prefetch(self, domain: str, store: ContentStore, path: str) -> None:
        try:
            await store.read_file(path)
        except Exception as e:
            logger.debug(f"Prefetch of {path} from {domain} failed: {e}")

    async def _recrawl(self, domain: str, url: str, path: str, options: CrawlOptions) -> None:
        if self._closing:
            return
        result = await self.crawl_site(url, options)
        if result.ok:
            await self._emit('updated', {'domain': domain, 'url': url, 'path': path,
                                        'version': result.version})

    async def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event, payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Listener failed handling {event}")

    async def _unwatch(self, domain: str) -> None:
        subscription = self._subscriptions.pop(domain, None)
        if subscription is None:
            return
        await subscription.close()
        live_subscriptions.dec()
        logger.info(f"Stopped watching {domain}")

    async def _close_subscriptions(self) -> None:
        for domain in list(self._subscriptions):
            await self._unwatch(domain)

    # Queries

    def list_crawled_sites(self) -> Dict[str, SiteRecord]:
        return {domain: dataclasses.replace(site) for domain, site in self._state.sites.items()}

    def get_crawled_site(self, url: str) -> SiteRecord:
        """Crawl progress for ``url``; a zero record when never crawled."""
        domain = to_domain(url)
        site = self._state.sites.get(domain)
        return dataclasses.replace(site) if site is not None else SiteRecord(domain=domain)

    def get_crawl_state(self, url: str) -> CrawlState:
        return self._crawl_states.get(to_domain(url), CrawlState.UNINDEXED)

    def list_profiles(self) -> Dict[str, ProfileRecord]:
        return copy.deepcopy(self._state.profiles)

    def get_profile(self, url: str) -> ProfileRecord:
        """Cached profile for a domain or an address key.

        Falls back to the default profile when nothing is cached.
        """
        domain = to_domain(url)
        if domain not in self._state.profiles:
            for site_domain, site in self._state.sites.items():
                if site.address_key and site.address_key == domain:
                    domain = site_domain
                    break
        profile = self._state.profiles.get(domain)
        if profile is None:
            return decode_profile(None, domain)
        return copy.deepcopy(profile)

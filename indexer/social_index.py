"""Social graph index: who follows whom.

The follower map is derived from each site's published follow list. Follow
lists are replaced wholesale on every profile change, so re-indexing a site
first clears every edge it contributed and then adds the current ones.
Friendship is computed from the map, never stored.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set

from observability.prometheus_metrics import followed_sites as followed_sites_gauge
from sources.errors import InvalidDomainError, MalformedRecordError, NotFoundError
from sources.store import ContentStore
from sources.urls import normalize_path, to_domain

from .schemas import (
    CrawlOptions,
    Follow,
    SocialIndexState,
    decode_change,
    decode_crawl_options,
    decode_profile,
    decode_social_index
)

if TYPE_CHECKING:
    from pipelines.persistence import DebouncedWriter

logger = logging.getLogger(__name__)

# Older sites publish their follow list under this name; a change to it
# also triggers a refetch of the profile
LEGACY_PROFILE_PATHS = ('/portal.json',)


def _safe_domain(url: str) -> Optional[str]:
    try:
        return to_domain(url)
    except InvalidDomainError:
        return None


class SocialGraphIndexer:
    """Owns the follower map."""

    def __init__(self, store: ContentStore, writer: "DebouncedWriter",
                 index_path: str = '/index/citizen/social.json',
                 profile_path: str = '/profile.json'):
        self.store = store
        self.writer = writer
        self.index_path = index_path
        self.profile_path = normalize_path(profile_path)
        self._trigger_paths = {self.profile_path, *LEGACY_PROFILE_PATHS}
        self._followers: Dict[str, List[str]] = {}

    async def setup(self) -> None:
        """Load the persisted follower map, or start empty."""
        try:
            state = decode_social_index(await self.store.read_file(self.index_path))
        except NotFoundError:
            logger.info(f"No social index at {self.index_path}, starting empty")
            state = SocialIndexState()
        except MalformedRecordError as e:
            logger.warning(f"Failed to read the social state: {e}")
            state = SocialIndexState()
        self._followers = state.followers
        followed_sites_gauge.set(len(self._followers))

    async def reset(self) -> None:
        self._followers = {}
        self._save()

    def _save(self) -> None:
        followed_sites_gauge.set(len(self._followers))
        state = SocialIndexState(followers=self._followers)
        self.writer.schedule_write(self.index_path, json.dumps(state.to_dict()))

    def touches_profile(self, changes: Iterable[Any]) -> bool:
        for raw in changes:
            change = decode_change(raw)
            if change is not None and normalize_path(change.path) in self._trigger_paths:
                return True
        return False

    async def fetch_follows(self, domain: str, site_store: ContentStore) -> List[Follow]:
        """Read the site's current follow list.

        A missing or unparseable profile means the site follows nobody.
        """
        try:
            raw = await site_store.read_file(self.profile_path)
        except NotFoundError:
            logger.debug(f"No profile published by {domain}")
            return []
        try:
            return decode_profile(raw, domain).follows
        except MalformedRecordError as e:
            logger.warning(f"Unparseable profile published by {domain}: {e}")
            return []

    async def apply_changes(self, domain: str, changes: Iterable[Any],
                            options: Optional[CrawlOptions] = None,
                            site_store: Optional[ContentStore] = None) -> bool:
        """Re-index the follows of ``domain`` if its profile changed.

        Returns True when the follower map was rebuilt for ``domain``.
        """
        options = decode_crawl_options(options)
        changes = list(changes)

        if not self.touches_profile(changes):
            return False
        if not options.indexes.social.follows:
            logger.debug(f"Follow indexing disabled, skipping {domain}")
            return False
        if site_store is None:
            raise ValueError("site_store is required to fetch the follow list")

        follows = await self.fetch_follows(domain, site_store)

        self._remove_follower(domain)

        for follow in follows:
            followed = _safe_domain(follow.url)
            if followed is None:
                logger.warning(f"Failed to index follow by {domain}, url: {follow.url!r}")
                continue
            followers = self._followers.setdefault(followed, [])
            if domain not in followers:
                followers.append(domain)

        logger.debug(f"Indexed {len(follows)} follows for {domain}")
        self._save()
        return True

    def _remove_follower(self, domain: str) -> None:
        for followed in list(self._followers):
            remaining = [d for d in self._followers[followed] if d != domain]
            if remaining:
                self._followers[followed] = remaining
            else:
                del self._followers[followed]

    async def purge_site(self, domain: str) -> None:
        """Remove ``domain`` from every follower set.

        The sites following ``domain`` are left in place.
        """
        self._remove_follower(domain)
        logger.info(f"Purged follow edges from {domain}")
        self._save()

    def list_followers(self, url: str) -> Set[str]:
        domain = _safe_domain(url)
        if domain is None:
            return set()
        return set(self._followers.get(domain, []))

    def list_friends(self, url: str) -> Set[str]:
        """Followers of ``url`` that ``url`` follows back."""
        domain = _safe_domain(url)
        if domain is None:
            return set()
        return {f for f in self._followers.get(domain, []) if self.is_following(domain, f)}

    def is_following(self, source: str, target: str) -> bool:
        source_domain = _safe_domain(source)
        target_domain = _safe_domain(target)
        if source_domain is None or target_domain is None:
            return False
        return source_domain in self._followers.get(target_domain, [])

    def is_friends(self, a: str, b: str) -> bool:
        return self.is_following(a, b) and self.is_following(b, a)

    def snapshot(self) -> Dict[str, Set[str]]:
        return {domain: set(followers) for domain, followers in self._followers.items()}

"""Feed index: global and per-author post feeds.

Posts are indexed by reference only. A change to ``/posts/<id>.json``
becomes a ``FeedItem`` built from the author's domain and the file name;
post content is never fetched at index time, so a crawl costs
O(changed files) regardless of fetch latency.
"""

import dataclasses
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from observability.prometheus_metrics import feed_items as feed_items_gauge
from sources.errors import InvalidDomainError, MalformedRecordError, NotFoundError
from sources.store import Change, ContentStore
from sources.urls import normalize_path, to_domain

from .schemas import (
    CrawlOptions,
    FeedIndexState,
    FeedItem,
    decode_change,
    decode_crawl_options,
    decode_feed_index,
    decode_feed_query
)

if TYPE_CHECKING:
    from pipelines.persistence import DebouncedWriter

logger = logging.getLogger(__name__)


def _sort_key(item: FeedItem):
    return (item.numeric_id, item.filename)


class FeedIndexer:
    """Owns the feed index and keeps it in sync with site changes."""

    def __init__(self, store: ContentStore, writer: "DebouncedWriter",
                 index_path: str = '/index/citizen/microblog.json',
                 posts_dir: str = '/posts'):
        self.store = store
        self.writer = writer
        self.index_path = index_path
        self.posts_prefix = normalize_path(posts_dir).rstrip('/') + '/'
        self.post_path_pattern = re.compile(
            r'^' + re.escape(self.posts_prefix) + r'[^/]+\.json$', re.IGNORECASE
        )
        self._state = FeedIndexState()
        self._user_feeds: Dict[str, List[FeedItem]] = {}

    async def setup(self) -> None:
        """Load the persisted feed index, or start empty."""
        try:
            self._state = decode_feed_index(await self.store.read_file(self.index_path))
        except NotFoundError:
            logger.info(f"No feed index at {self.index_path}, starting empty")
            self._state = FeedIndexState()
        except MalformedRecordError as e:
            logger.warning(f"Failed to read the feed index state: {e}")
            self._state = FeedIndexState()

        self._state.feed.sort(key=_sort_key, reverse=True)
        self._user_feeds = {}
        for item in self._state.feed:
            self._user_feeds.setdefault(item.author, []).append(item)
        feed_items_gauge.set(len(self._state.feed))
        logger.info(f"Loaded feed index with {len(self._state.feed)} items")

    async def reset(self) -> None:
        self._state = FeedIndexState()
        self._user_feeds = {}
        self._save()

    def _save(self) -> None:
        feed_items_gauge.set(len(self._state.feed))
        self.writer.schedule_write(self.index_path, json.dumps(self._state.to_dict()))

    def match_post_path(self, path: str) -> Optional[str]:
        """Return the post file name if ``path`` is a post file, else None."""
        path = normalize_path(path)
        if not self.post_path_pattern.match(path):
            return None
        return path[len(self.posts_prefix):]

    async def apply_changes(self, domain: str, changes: Iterable[Any],
                            options: Optional[CrawlOptions] = None) -> int:
        """Apply a batch of file changes from ``domain``.

        Every touched post is removed first and re-added unless the change
        is a deletion, then both feeds are re-sorted. Returns the number of
        post changes applied.
        """
        options = decode_crawl_options(options)

        # Last change per file wins
        to_index: Dict[str, Change] = {}
        for raw in changes:
            change = decode_change(raw)
            if change is None:
                continue
            filename = self.match_post_path(change.path)
            if filename is not None:
                to_index[filename] = change

        if not to_index:
            logger.debug(f"No post changes to index for {domain}")
            return 0

        touched = set(to_index)
        feed = [p for p in self._state.feed if not (p.author == domain and p.filename in touched)]

        for filename, change in to_index.items():
            if change.is_delete:
                continue
            if options.indexes.feed:
                feed.append(FeedItem(author=domain, filename=filename))

        feed.sort(key=_sort_key, reverse=True)
        self._state.feed = feed
        self._rebuild_user_feed(domain)

        logger.debug(f"Indexed {len(to_index)} post changes for {domain}")
        self._save()
        return len(to_index)

    def _rebuild_user_feed(self, domain: str) -> None:
        user_feed = [p for p in self._state.feed if p.author == domain]
        if user_feed:
            self._user_feeds[domain] = user_feed
        else:
            self._user_feeds.pop(domain, None)

    async def purge_site(self, domain: str) -> None:
        """Remove every item authored by ``domain``."""
        before = len(self._state.feed)
        self._state.feed = [p for p in self._state.feed if p.author != domain]
        self._user_feeds.pop(domain, None)
        logger.info(f"Purged {before - len(self._state.feed)} feed items for {domain}")
        self._save()

    def list_feed(self, query: Any = None, **kwargs) -> List[FeedItem]:
        """Query the feed.

        Accepts a FeedQuery, a dict, or keyword arguments (author, after,
        before, offset, limit, reverse). Bounds are exclusive and compare
        against ``numeric_id``; ``reverse`` applies before pagination.
        """
        if query is None:
            query = kwargs
        query = decode_feed_query(query)

        if query.author:
            try:
                author = to_domain(query.author)
            except InvalidDomainError:
                logger.debug(f"Ignoring feed query for invalid author {query.author!r}")
                return []
            results = list(self._user_feeds.get(author, []))
        else:
            results = list(self._state.feed)

        if query.before is not None or query.after is not None:
            results = [
                item for item in results
                if (query.before is None or item.numeric_id < query.before)
                and (query.after is None or item.numeric_id > query.after)
            ]

        if query.reverse:
            results.reverse()

        start = query.offset or 0
        end = start + query.limit if query.limit is not None else None
        results = results[start:end]

        return [dataclasses.replace(item) for item in results]

    def list_author_filenames(self, domain: str) -> List[str]:
        return [item.filename for item in self._user_feeds.get(domain, [])]

    @property
    def threads(self) -> Dict[str, List[str]]:
        return {url: list(posts) for url, posts in self._state.threads.items()}

    def __len__(self) -> int:
        return len(self._state.feed)

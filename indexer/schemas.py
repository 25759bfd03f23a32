"""Record schemas and decoders for data fetched from remote sites.

Remote sites are independently owned, so nothing read from them is trusted.
Every decoder here takes an arbitrary decoded JSON value (or raw bytes) and
returns a fully-populated record: fields that are absent or have the wrong
type fall back to documented defaults, and malformed elements of lists are
dropped. Only a root-level JSON parse failure raises MalformedRecordError.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from sources.errors import MalformedRecordError
from sources.store import Change, ChangeType

logger = logging.getLogger(__name__)

DEFAULT_AVATAR = 'avatar.png'

_NUMBER = (int, float)


def load_json(raw: Union[bytes, bytearray, str]) -> Any:
    """Parse raw JSON text. Raises MalformedRecordError on failure."""
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode('utf-8')
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        logger.debug(f"Failed to parse record: {e}")
        raise MalformedRecordError(str(e)) from e


def _coerce(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, str)):
        return load_json(value)
    return value


def _get(obj: Any, key: str, types: Union[type, Tuple[type, ...]], fallback: Any = None) -> Any:
    """Return ``obj[key]`` if it has one of ``types``, else ``fallback``.

    Booleans never count as numbers.
    """
    if not isinstance(obj, dict):
        return fallback
    value = obj.get(key)
    if isinstance(value, bool) and bool not in (types if isinstance(types, tuple) else (types,)):
        return fallback
    if isinstance(value, types):
        return value
    return fallback


def _get_count(obj: Any, key: str, fallback: Optional[int] = None) -> Optional[int]:
    value = _get(obj, key, _NUMBER)
    if value is None or not math.isfinite(value) or value < 0 or value != int(value):
        return fallback
    return int(value)


def default_profile_name(domain: str) -> str:
    if len(domain) > 16:
        return domain[:8] + '..' + domain[-4:]
    return domain


def parse_numeric_id(post_id: str) -> int:
    """Parse a post id as base 10, then base 36; 0 when neither works."""
    for base in (10, 36):
        try:
            return int(post_id, base)
        except ValueError:
            continue
    return 0


# Records

@dataclass
class Follow:
    url: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'url': self.url}
        if self.name is not None:
            result['name'] = self.name
        return result


@dataclass
class ProfileRecord:
    """Sanitized site profile."""
    name: str
    bio: str = ''
    avatar_path: str = DEFAULT_AVATAR
    follows: List[Follow] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'bio': self.bio,
            'avatar': self.avatar_path,
            'follows': [f.to_dict() for f in self.follows]
        }


@dataclass
class PostRecord:
    """Sanitized microblog post."""
    type: str = 'text'
    text: str = ''
    thread_root: Optional[str] = None
    thread_parent: Optional[str] = None
    created_at: float = 0

    def to_dict(self) -> Dict[str, Any]:
        result = {'type': self.type, 'text': self.text, 'createdAt': self.created_at}
        if self.thread_root:
            result['threadRoot'] = self.thread_root
        if self.thread_parent:
            result['threadParent'] = self.thread_parent
        return result


@dataclass
class SiteRecord:
    """Crawl progress for one domain."""
    domain: str
    address_key: str = ''
    last_indexed_version: int = 0
    display_name: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.address_key,
            'version': self.last_indexed_version,
            'name': self.display_name
        }


@dataclass
class FeedItem:
    """Reference to one post in the feed index. Identity is (author, filename)."""
    author: str
    filename: str
    created_at: Optional[float] = None
    thread_root: Optional[str] = None
    numeric_id: int = field(init=False, compare=False)

    def __post_init__(self):
        self.numeric_id = parse_numeric_id(self.id)

    @property
    def id(self) -> str:
        stem, dot, _ = self.filename.rpartition('.')
        return stem if dot else self.filename

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.author, self.filename)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'author': self.author, 'filename': self.filename}
        if self.created_at is not None:
            result['createdAt'] = self.created_at
        if self.thread_root is not None:
            result['threadRoot'] = self.thread_root
        return result


# Index documents

@dataclass
class SiteIndexState:
    """Persisted crawl state: site records and cached profiles."""
    sites: Dict[str, SiteRecord] = field(default_factory=dict)
    profiles: Dict[str, ProfileRecord] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sites': {domain: site.to_dict() for domain, site in self.sites.items()},
            'profiles': {domain: profile.to_dict() for domain, profile in self.profiles.items()}
        }


@dataclass
class FeedIndexState:
    """Persisted feed index. Per-author feeds are derived from ``feed``."""
    feed: List[FeedItem] = field(default_factory=list)
    threads: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'feed': [item.to_dict() for item in self.feed],
            'threads': {url: list(posts) for url, posts in self.threads.items()}
        }


@dataclass
class SocialIndexState:
    """Persisted follower map."""
    followers: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'followers': {domain: list(f) for domain, f in self.followers.items()}}


# Options and queries

@dataclass
class SocialIndexOptions:
    follows: bool = True


@dataclass
class IndexOptions:
    feed: bool = True
    social: SocialIndexOptions = field(default_factory=SocialIndexOptions)


@dataclass
class CrawlOptions:
    """Per-crawl toggles."""
    indexes: IndexOptions = field(default_factory=IndexOptions)
    live: bool = False


@dataclass
class FeedQuery:
    author: Optional[str] = None
    after: Optional[float] = None
    before: Optional[float] = None
    offset: Optional[int] = None
    limit: Optional[int] = None
    reverse: bool = False


# Decoders

def decode_follows(value: Any) -> List[Follow]:
    if not isinstance(value, list):
        return []
    follows = []
    for entry in value:
        url = _get(entry, 'url', str)
        if not url:
            continue
        follows.append(Follow(url=url, name=_get(entry, 'name', str)))
    return follows


def decode_profile(value: Any, domain: str = '') -> ProfileRecord:
    """Decode a profile document published by ``domain``."""
    value = _coerce(value)
    return ProfileRecord(
        name=_get(value, 'name', str, default_profile_name(domain)),
        bio=_get(value, 'bio', str, ''),
        avatar_path=_get(value, 'avatar', str, DEFAULT_AVATAR),
        follows=decode_follows(_get(value, 'follows', list))
    )


def decode_post(value: Any) -> PostRecord:
    value = _coerce(value)
    return PostRecord(
        type=_get(value, 'type', str, 'text'),
        text=_get(value, 'text', str, ''),
        thread_root=_get(value, 'threadRoot', str) or None,
        thread_parent=_get(value, 'threadParent', str) or None,
        created_at=_get(value, 'createdAt', _NUMBER, 0)
    )


def decode_feed_item(value: Any) -> Optional[FeedItem]:
    author = _get(value, 'author', str)
    filename = _get(value, 'filename', str)
    if not author or not filename:
        return None
    return FeedItem(
        author=author,
        filename=filename,
        created_at=_get(value, 'createdAt', _NUMBER),
        thread_root=_get(value, 'threadRoot', str)
    )


def decode_site_index(value: Any) -> SiteIndexState:
    value = _coerce(value)
    state = SiteIndexState()

    for domain, site in (_get(value, 'sites', dict) or {}).items():
        key = _get(site, 'key', str)
        if key is None:
            continue
        state.sites[domain] = SiteRecord(
            domain=domain,
            address_key=key,
            last_indexed_version=_get_count(site, 'version', 0),
            display_name=_get(site, 'name', str, '')
        )

    for domain, profile in (_get(value, 'profiles', dict) or {}).items():
        if _get(profile, 'name', str) is None or _get(profile, 'bio', str) is None:
            continue
        state.profiles[domain] = decode_profile(profile, domain)

    return state


def decode_feed_index(value: Any) -> FeedIndexState:
    value = _coerce(value)
    state = FeedIndexState()

    seen = set()
    for entry in _get(value, 'feed', list) or []:
        item = decode_feed_item(entry)
        if item is None or item.identity in seen:
            continue
        seen.add(item.identity)
        state.feed.append(item)

    for url, posts in (_get(value, 'threads', dict) or {}).items():
        if isinstance(posts, list):
            state.threads[url] = [p for p in posts if isinstance(p, str)]

    return state


def decode_social_index(value: Any) -> SocialIndexState:
    value = _coerce(value)
    state = SocialIndexState()
    for domain, followers in (_get(value, 'followers', dict) or {}).items():
        if not isinstance(followers, list):
            continue
        unique = []
        for follower in followers:
            if isinstance(follower, str) and follower not in unique:
                unique.append(follower)
        state.followers[domain] = unique
    return state


def decode_crawl_options(value: Any) -> CrawlOptions:
    """Decode crawl options. Unknown or mistyped fields keep their defaults."""
    if isinstance(value, CrawlOptions):
        return value
    indexes = _get(value, 'indexes', dict) or {}
    # Older callers nest the feed toggle under "microblog"
    microblog = _get(indexes, 'microblog', dict) or {}
    social = _get(indexes, 'social', dict) or {}
    return CrawlOptions(
        indexes=IndexOptions(
            feed=_get(indexes, 'feed', bool, _get(microblog, 'feed', bool, True)),
            social=SocialIndexOptions(follows=_get(social, 'follows', bool, True))
        ),
        live=_get(value, 'live', bool, False)
    )


def decode_feed_query(value: Any) -> FeedQuery:
    if isinstance(value, FeedQuery):
        return value
    return FeedQuery(
        author=_get(value, 'author', str) or None,
        after=_get(value, 'after', _NUMBER),
        before=_get(value, 'before', _NUMBER),
        offset=_get_count(value, 'offset'),
        limit=_get_count(value, 'limit'),
        reverse=_get(value, 'reverse', bool, False)
    )


def decode_change(value: Any) -> Optional[Change]:
    """Decode one history entry; None when it has no usable path or type."""
    if isinstance(value, Change):
        return value
    path = _get(value, 'path', str)
    change_type = _get(value, 'type', str)
    if not path:
        return None
    if change_type == 'put':
        return Change(path=path, type=ChangeType.PUT)
    if change_type in ('del', 'delete'):
        return Change(path=path, type=ChangeType.DELETE)
    return None

"""Owner-side write API for a citizen site.

``SiteAuthor`` edits the files the crawler reads: ``/profile.json`` (name,
bio, avatar and follow list) and the post files under ``/posts``. It only
works against a store the caller owns.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from config.settings import IndexerConfig
from indexer.schemas import Follow, PostRecord, ProfileRecord, decode_post, decode_profile
from sources.errors import MalformedRecordError, NotFoundError, NotOwnerError
from sources.store import ContentStore
from sources.urls import normalize_path, to_domain, to_url

logger = logging.getLogger(__name__)

_id_lock = threading.Lock()
_last_id = 0


def generate_post_id() -> str:
    """Millisecond timestamp id, strictly increasing within the process."""
    global _last_id
    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return str(candidate)


def _fix_filename(filename: str) -> str:
    if not filename.endswith('.json'):
        filename += '.json'
    return filename


@dataclass
class AuthoredPost:
    """A post file on the author's site, with its content when loaded."""
    filename: str
    url: str
    post: Optional[PostRecord] = None


class SiteAuthor:
    """Edits the profile and posts of a site the caller owns."""

    def __init__(self, store: ContentStore, domain: str = '',
                 config: Optional[IndexerConfig] = None):
        """Initialize author.

        Args:
            store: The site's content store; must be owned
            domain: The site's domain, used for post URLs and the default name
            config: Site layout settings (defaults when omitted)
        """
        self.store = store
        self.domain = to_domain(domain) if domain else ''
        self.config = config or IndexerConfig()
        self.profile_path = normalize_path(self.config.profile_path)
        self.posts_prefix = normalize_path(self.config.posts_dir).rstrip('/') + '/'

    async def setup(self) -> None:
        metadata = await self.store.get_metadata()
        if not metadata.is_owner:
            raise NotOwnerError(f"Cannot author {self.domain or 'site'}: store is not owned")

    def post_path(self, filename: str) -> str:
        return self.posts_prefix + _fix_filename(filename)

    def post_url(self, filename: str) -> str:
        path = self.post_path(filename)
        return f"{to_url(self.domain)}{path}" if self.domain else path

    # Profile

    async def get_profile(self) -> ProfileRecord:
        try:
            raw = await self.store.read_file(self.profile_path)
        except NotFoundError:
            return decode_profile(None, self.domain)
        try:
            return decode_profile(raw, self.domain)
        except MalformedRecordError as e:
            logger.warning(f"Replacing unparseable profile: {e}")
            return decode_profile(None, self.domain)

    async def set_profile(self, name: Optional[str] = None, bio: Optional[str] = None,
                          avatar_path: Optional[str] = None,
                          follows: Optional[List[Follow]] = None) -> ProfileRecord:
        """Update the given profile fields and write the profile back."""
        profile = await self.get_profile()
        if name is not None:
            profile.name = name
        if bio is not None:
            profile.bio = bio
        if avatar_path is not None:
            profile.avatar_path = avatar_path
        if follows is not None:
            profile.follows = list(follows)
        await self._write_profile(profile)
        return profile

    async def _write_profile(self, profile: ProfileRecord) -> None:
        await self.store.write_file(self.profile_path, json.dumps(profile.to_dict()))

    async def follow(self, url: str, name: Optional[str] = None) -> None:
        domain = to_domain(url)
        profile = await self.get_profile()
        profile.follows = [f for f in profile.follows if not self._follows_domain(f, domain)]
        profile.follows.append(Follow(url=domain, name=name))
        await self._write_profile(profile)
        logger.info(f"Now following {domain}")

    async def unfollow(self, url: str) -> None:
        domain = to_domain(url)
        profile = await self.get_profile()
        profile.follows = [f for f in profile.follows if not self._follows_domain(f, domain)]
        await self._write_profile(profile)
        logger.info(f"Unfollowed {domain}")

    async def is_following(self, url: str) -> bool:
        domain = to_domain(url)
        profile = await self.get_profile()
        return any(self._follows_domain(f, domain) for f in profile.follows)

    async def list_follows(self) -> List[Follow]:
        return (await self.get_profile()).follows

    @staticmethod
    def _follows_domain(follow: Follow, domain: str) -> bool:
        try:
            return to_domain(follow.url) == domain
        except ValueError:
            return False

    # Posts

    def generate_post_filename(self) -> str:
        return generate_post_id() + '.json'

    def _massage(self, details: Dict[str, Any]) -> Dict[str, Any]:
        # A reply names both its thread root and its direct parent
        root = details.get('thread_root')
        parent = details.get('thread_parent')
        if root and not parent:
            details['thread_parent'] = root
        if parent and not root:
            details['thread_root'] = parent
        for key in ('thread_root', 'thread_parent'):
            if details.get(key):
                details[key] = self._thread_url(details[key])
        return details

    @staticmethod
    def _thread_url(url: str) -> str:
        scheme, sep, rest = url.partition('://')
        if not sep:
            scheme, rest = 'dat', url
        domain = to_domain(url)
        path = rest[rest.find('/'):] if '/' in rest else ''
        return f"{scheme}://{domain}{path}"

    async def list_posts(self, offset: int = 0, limit: Optional[int] = None,
                         reverse: bool = False, include_content: bool = False,
                         root_posts_only: bool = False) -> List[AuthoredPost]:
        """List post files, oldest first unless ``reverse``.

        Content is loaded when ``include_content`` or ``root_posts_only`` is set.
        """
        try:
            names = await self.store.list_directory(self.posts_prefix)
        except NotFoundError:
            names = []
        names = [n for n in names if n.endswith('.json')]

        if reverse:
            names.reverse()
        if offset:
            names = names[offset:]

        posts = [AuthoredPost(filename=n, url=self.post_url(n)) for n in names]
        if include_content or root_posts_only:
            for entry in posts:
                entry.post = await self.get_post(entry.filename)

        if root_posts_only:
            posts = [p for p in posts if not p.post.thread_root and not p.post.thread_parent]

        if limit is not None:
            posts = posts[:limit]
        return posts

    async def count_posts(self, **query) -> int:
        return len(await self.list_posts(**query))

    async def get_post(self, filename: str) -> PostRecord:
        """Read one post.

        Raises:
            NotFoundError: the post does not exist
            MalformedRecordError: the post is not valid JSON
        """
        return decode_post(await self.store.read_file(self.post_path(filename)))

    async def add_post(self, text: str, thread_root: Optional[str] = None,
                       thread_parent: Optional[str] = None, type: str = 'text',
                       created_at: Optional[float] = None) -> AuthoredPost:
        details = self._massage({'thread_root': thread_root, 'thread_parent': thread_parent})
        post = PostRecord(
            type=type,
            text=text,
            thread_root=details['thread_root'],
            thread_parent=details['thread_parent'],
            created_at=created_at if created_at is not None else int(time.time() * 1000)
        )
        filename = self.generate_post_filename()
        await self.store.write_file(self.post_path(filename), json.dumps(post.to_dict()))
        logger.debug(f"Added post {filename}")
        return AuthoredPost(filename=filename, url=self.post_url(filename), post=post)

    async def edit_post(self, filename: str, **details) -> PostRecord:
        """Update fields of an existing post (text, type, thread_root, thread_parent)."""
        unknown = set(details) - {'text', 'type', 'thread_root', 'thread_parent'}
        if unknown:
            raise TypeError(f"Unknown post fields: {', '.join(sorted(unknown))}")

        post = await self.get_post(filename)
        details = self._massage(dict(details))
        for key, value in details.items():
            setattr(post, key, value)
        await self.store.write_file(self.post_path(filename), json.dumps(post.to_dict()))
        return post

    async def remove_post(self, filename: str) -> None:
        await self.store.delete_file(self.post_path(filename))
        logger.debug(f"Removed post {filename}")

"""
Tests for the social graph index.
"""

import json
import os
import sys

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from indexer.social_index import SocialGraphIndexer
from pipelines.persistence import DebouncedWriter
from sources.memory import MemoryStore
from sources.store import Change, ChangeType

PROFILE_CHANGE = [Change(path='/profile.json', type=ChangeType.PUT)]


async def site_following(*urls, name='Someone'):
    store = MemoryStore(is_owner=True)
    profile = {'name': name, 'bio': '', 'follows': [{'url': url} for url in urls]}
    await store.write_file('/profile.json', json.dumps(profile))
    return store


@pytest.fixture
def index_store():
    return MemoryStore(is_owner=True)


@pytest_asyncio.fixture
async def social(index_store):
    writer = DebouncedWriter(index_store, delay=0.01, editable=True)
    indexer = SocialGraphIndexer(index_store, writer)
    await indexer.setup()
    yield indexer
    writer.cancel_all()


class TestApplyChanges:
    """Re-indexing a site's follow list."""

    @pytest.mark.asyncio
    async def test_friends_example(self, social):
        """Test mutual follows become friends and one-way follows do not."""
        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=await site_following('b.com', 'c.com'))
        await social.apply_changes('b.com', PROFILE_CHANGE, site_store=await site_following('a.com'))

        assert social.list_followers('a.com') == {'b.com'}
        assert social.list_followers('b.com') == {'a.com'}
        assert social.list_followers('c.com') == {'a.com'}
        assert social.list_friends('a.com') == {'b.com'}
        assert social.list_friends('c.com') == set()
        assert social.is_friends('a.com', 'b.com')
        assert not social.is_friends('a.com', 'c.com')

    @pytest.mark.asyncio
    async def test_follow_urls_normalized(self, social):
        """Test that follow URLs are reduced to domains."""
        store = await site_following('dat://B.com/some/path', 'https://c.com')
        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=store)

        assert social.is_following('a.com', 'b.com')
        assert social.is_following('dat://a.com', 'c.com')

    @pytest.mark.asyncio
    async def test_refetch_replaces_edges(self, social):
        """Test that a new follow list removes edges no longer present."""
        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=await site_following('b.com'))
        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=await site_following('c.com'))

        assert social.snapshot() == {'c.com': {'a.com'}}

    @pytest.mark.asyncio
    async def test_unrelated_changes_skip_fetch(self, social):
        """Test that the profile is only read when it changed."""
        store = await site_following('b.com')

        rebuilt = await social.apply_changes(
            'a.com', [Change(path='/posts/1.json', type=ChangeType.PUT)], site_store=store
        )

        assert rebuilt is False
        assert store.read_count == 0

    @pytest.mark.asyncio
    async def test_legacy_portal_change_refetches(self, social):
        """Test that a change to the legacy portal record re-reads the follow list."""
        store = await site_following('b.com')

        rebuilt = await social.apply_changes(
            'a.com', [Change(path='/portal.json', type=ChangeType.PUT)], site_store=store
        )

        assert rebuilt is True
        assert social.list_followers('b.com') == {'a.com'}

    @pytest.mark.asyncio
    async def test_unresolvable_follows_skipped(self, social):
        """Test that bad follow entries are dropped without failing the batch."""
        store = MemoryStore(is_owner=True)
        await store.write_file('/profile.json', json.dumps({
            'name': 'A',
            'follows': [{'url': 'dat://'}, {'url': 42}, 'junk', {'url': 'b.com'}]
        }))

        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=store)

        assert social.snapshot() == {'b.com': {'a.com'}}

    @pytest.mark.asyncio
    async def test_missing_profile_clears_follows(self, social):
        """Test that a deleted profile leaves the site following nobody."""
        store = await site_following('b.com')
        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=store)
        await store.delete_file('/profile.json')

        await social.apply_changes('a.com', [Change(path='/profile.json', type=ChangeType.DELETE)],
                                   site_store=store)

        assert social.snapshot() == {}

    @pytest.mark.asyncio
    async def test_malformed_profile_clears_follows(self, social):
        """Test that an unparseable profile counts as an empty follow list."""
        store = await site_following('b.com')
        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=store)
        await store.write_file('/profile.json', b'{broken')

        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=store)

        assert social.list_followers('b.com') == set()

    @pytest.mark.asyncio
    async def test_follows_disabled(self, social):
        """Test that follow indexing can be turned off per crawl."""
        store = await site_following('b.com')

        rebuilt = await social.apply_changes(
            'a.com', PROFILE_CHANGE, {'indexes': {'social': {'follows': False}}}, site_store=store
        )

        assert rebuilt is False
        assert social.snapshot() == {}

    @pytest.mark.asyncio
    async def test_site_store_required(self, social):
        """Test that a profile change without a site store is rejected."""
        with pytest.raises(ValueError):
            await social.apply_changes('a.com', PROFILE_CHANGE)


class TestQueries:
    """Follower and friend queries."""

    @pytest.mark.asyncio
    async def test_empty_graph(self, social):
        """Test queries against an empty graph."""
        assert social.list_followers('a.com') == set()
        assert social.list_friends('a.com') == set()
        assert social.is_following('a.com', 'b.com') is False
        assert social.is_friends('a.com', 'b.com') is False

    @pytest.mark.asyncio
    async def test_invalid_domains(self, social):
        """Test that unusable input answers empty or False."""
        assert social.list_followers('dat://') == set()
        assert social.list_friends('') == set()
        assert social.is_following('', 'b.com') is False

    @pytest.mark.asyncio
    async def test_purge_site(self, social):
        """Test that purging removes a site's outgoing edges only."""
        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=await site_following('b.com'))
        await social.apply_changes('b.com', PROFILE_CHANGE, site_store=await site_following('a.com'))

        await social.purge_site('a.com')

        assert social.snapshot() == {'a.com': {'b.com'}}


class TestSocialPersistence:
    """Saving and loading the follower map."""

    @pytest.mark.asyncio
    async def test_round_trip_through_store(self, social, index_store):
        """Test that a flushed follower map reloads unchanged."""
        await social.apply_changes('a.com', PROFILE_CHANGE, site_store=await site_following('b.com', 'c.com'))
        await social.writer.flush()

        reloaded = SocialGraphIndexer(index_store, DebouncedWriter(index_store))
        await reloaded.setup()

        assert reloaded.snapshot() == social.snapshot()

    @pytest.mark.asyncio
    async def test_duplicate_followers_dropped_on_load(self, index_store):
        """Test that repeated or non-string followers are cleaned on load."""
        await index_store.write_file('/index/citizen/social.json', json.dumps({
            'followers': {'b.com': ['a.com', 'a.com', 7], 'c.com': 'junk'}
        }))

        indexer = SocialGraphIndexer(index_store, DebouncedWriter(index_store))
        await indexer.setup()

        assert indexer.snapshot() == {'b.com': {'a.com'}}

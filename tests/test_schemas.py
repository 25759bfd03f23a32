"""
Tests for record decoding.

Remote records are untrusted; decoders must substitute defaults for any
missing or mistyped field and only fail on unparseable JSON.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from indexer.schemas import (
    CrawlOptions,
    FeedItem,
    default_profile_name,
    decode_change,
    decode_crawl_options,
    decode_feed_query,
    decode_post,
    decode_profile,
    decode_site_index,
    parse_numeric_id
)
from sources.errors import MalformedRecordError
from sources.store import Change, ChangeType


class TestProfileDecoding:
    """Profile records."""

    def test_full_profile(self):
        """Test decoding a well-formed profile."""
        profile = decode_profile(
            b'{"name": "Alice", "bio": "hi", "avatar": "me.png",'
            b' "follows": [{"url": "bob.com", "name": "Bob"}]}',
            'alice.com'
        )

        assert profile.name == 'Alice'
        assert profile.bio == 'hi'
        assert profile.avatar_path == 'me.png'
        assert profile.follows[0].url == 'bob.com'
        assert profile.follows[0].name == 'Bob'

    def test_mistyped_fields_fall_back(self):
        """Test that every wrong-typed field gets its default."""
        profile = decode_profile({'name': 5, 'bio': None, 'avatar': [], 'follows': 'x'}, 'alice.com')

        assert profile.name == 'alice.com'
        assert profile.bio == ''
        assert profile.avatar_path == 'avatar.png'
        assert profile.follows == []

    def test_non_object_root(self):
        """Test that a JSON array decodes to the default profile."""
        assert decode_profile('[1, 2]', 'alice.com').name == 'alice.com'

    def test_unparseable_json_raises(self):
        """Test that only a root parse failure is an error."""
        with pytest.raises(MalformedRecordError):
            decode_profile(b'{"name": ', 'alice.com')

    def test_invalid_utf8_raises(self):
        """Test that undecodable bytes are malformed."""
        with pytest.raises(MalformedRecordError):
            decode_profile(b'\xff\xfe', 'alice.com')

    def test_malformed_follow_entries_dropped(self):
        """Test that follow entries without a string url are skipped."""
        profile = decode_profile({'follows': [{'url': 'b.com'}, {'name': 'x'}, 3, {'url': 'c.com', 'name': 9}]})

        assert [(f.url, f.name) for f in profile.follows] == [('b.com', None), ('c.com', None)]

    @pytest.mark.parametrize("domain,expected", [
        ('short.com', 'short.com'),
        ('exactly16chars.x', 'exactly16chars.x'),
        ('0123456789abcdef0123456789abcdef', '01234567..cdef'),
    ])
    def test_default_name(self, domain, expected):
        """Test default display names for short and long domains."""
        assert default_profile_name(domain) == expected


class TestPostDecoding:

    def test_post_defaults(self):
        """Test that an empty post gets every default."""
        post = decode_post({})

        assert post.type == 'text'
        assert post.text == ''
        assert post.thread_root is None
        assert post.created_at == 0

    def test_post_fields(self):
        """Test decoding a reply."""
        post = decode_post('{"text": "hi", "threadRoot": "dat://a.com/posts/1.json", "createdAt": 12.5}')

        assert post.text == 'hi'
        assert post.thread_root == 'dat://a.com/posts/1.json'
        assert post.thread_parent is None
        assert post.created_at == 12.5

    def test_boolean_is_not_a_timestamp(self):
        """Test that booleans never count as numbers."""
        assert decode_post({'createdAt': True}).created_at == 0


class TestSiteIndexDecoding:

    def test_entries_without_key_dropped(self):
        """Test that site records need a string key."""
        state = decode_site_index({
            'sites': {
                'a.com': {'key': 'k1', 'version': 4, 'name': 'A'},
                'b.com': {'version': 2},
                'c.com': {'key': 'k3', 'version': -1}
            },
            'profiles': {
                'a.com': {'name': 'A', 'bio': ''},
                'b.com': {'name': 'B'}
            }
        })

        assert set(state.sites) == {'a.com', 'c.com'}
        assert state.sites['a.com'].last_indexed_version == 4
        assert state.sites['c.com'].last_indexed_version == 0
        assert set(state.profiles) == {'a.com'}

    def test_round_trip_wire_format(self):
        """Test that to_dict produces the persisted layout."""
        state = decode_site_index({'sites': {'a.com': {'key': 'k', 'version': 3, 'name': 'A'}}})

        assert state.to_dict() == {
            'sites': {'a.com': {'key': 'k', 'version': 3, 'name': 'A'}},
            'profiles': {}
        }


class TestFeedItems:

    @pytest.mark.parametrize("post_id,expected", [
        ('42', 42),
        ('z', 35),
        ('k3x9', int('k3x9', 36)),
        ('not an id', 0),
        ('', 0),
    ])
    def test_numeric_id(self, post_id, expected):
        """Test base-10 then base-36 id parsing."""
        assert parse_numeric_id(post_id) == expected

    def test_item_identity(self):
        """Test id, numeric id and identity of a feed item."""
        item = FeedItem(author='a.com', filename='17.json')

        assert item.id == '17'
        assert item.numeric_id == 17
        assert item.identity == ('a.com', '17.json')
        assert item.to_dict() == {'author': 'a.com', 'filename': '17.json'}


class TestOptionsAndQueries:

    def test_crawl_option_defaults(self):
        """Test that missing options enable every index."""
        options = decode_crawl_options(None)

        assert options == CrawlOptions()
        assert options.indexes.feed is True
        assert options.indexes.social.follows is True
        assert options.live is False

    def test_legacy_microblog_feed_toggle(self):
        """Test the older nested feed toggle."""
        options = decode_crawl_options({'indexes': {'microblog': {'feed': False}}, 'live': True})

        assert options.indexes.feed is False
        assert options.live is True

    def test_mistyped_options_keep_defaults(self):
        """Test that wrong-typed toggles are ignored."""
        options = decode_crawl_options({'indexes': {'feed': 'no', 'social': {'follows': 0}}, 'live': 1})

        assert options == CrawlOptions()

    def test_feed_query(self):
        """Test query decoding with invalid pagination values."""
        query = decode_feed_query({'author': 'a.com', 'after': 3, 'limit': -1, 'offset': 2.5, 'reverse': True})

        assert query.author == 'a.com'
        assert query.after == 3
        assert query.before is None
        assert query.limit is None
        assert query.offset is None
        assert query.reverse is True


class TestChanges:

    @pytest.mark.parametrize("raw,expected", [
        ({'path': '/posts/1.json', 'type': 'put'}, Change('/posts/1.json', ChangeType.PUT)),
        ({'path': '/posts/1.json', 'type': 'del'}, Change('/posts/1.json', ChangeType.DELETE)),
        ({'path': '/posts/1.json', 'type': 'delete'}, Change('/posts/1.json', ChangeType.DELETE)),
        ({'path': '/posts/1.json', 'type': 'mkdir'}, None),
        ({'type': 'put'}, None),
        ('junk', None),
    ])
    def test_decode_change(self, raw, expected):
        """Test history entry decoding."""
        assert decode_change(raw) == expected

"""
Tests for the well-known address resolver.

HTTP traffic is mocked at the aiohttp session.
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config.settings import IndexerConfig
from sources.errors import NameResolutionError
from sources.resolver import WellKnownResolver, parse_well_known

KEY = 'ab' * 32


def mock_response(status, body=''):
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=body)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def resolver_with(*responses, **kwargs):
    kwargs.setdefault('retry_delay', 0)
    resolver = WellKnownResolver(**kwargs)
    session = MagicMock()
    session.get = MagicMock(side_effect=list(responses))
    session.close = AsyncMock()
    resolver.session = session
    return resolver


class TestParseWellKnown:

    def test_address_with_ttl(self):
        """Test parsing an address line and a TTL line."""
        resolved = parse_well_known(f'dat://{KEY.upper()}/\nTTL=60\n')

        assert resolved.address == KEY
        assert resolved.ttl == 60

    def test_bare_key(self):
        """Test that the scheme prefix is optional."""
        assert parse_well_known(KEY).address == KEY

    @pytest.mark.parametrize("body", ['', 'not a key', 'dat://abc', '<html></html>'])
    def test_no_address(self, body):
        """Test bodies without an address."""
        assert parse_well_known(body) is None

    def test_invalid_ttl_ignored(self):
        """Test that a bad TTL keeps the default."""
        assert parse_well_known(f'{KEY}\nTTL=soon').ttl == 3600


class TestWellKnownResolver:

    @pytest.mark.asyncio
    async def test_resolves_and_caches(self):
        """Test that a resolved address is cached."""
        resolver = resolver_with(mock_response(200, f'dat://{KEY}\nTTL=3600'))

        assert await resolver.resolve_address('alice.com') == KEY
        assert await resolver.resolve_address('alice.com') == KEY
        assert resolver.session.get.call_count == 1
        resolver.session.get.assert_called_with('https://alice.com/.well-known/dat', allow_redirects=True)

    @pytest.mark.asyncio
    async def test_address_passes_through(self):
        """Test that a raw address needs no lookup."""
        resolver = resolver_with()

        assert await resolver.resolve_address(KEY.upper()) == KEY
        assert resolver.session.get.call_count == 0

    @pytest.mark.asyncio
    async def test_retries_on_server_error(self):
        """Test that retryable statuses are retried."""
        resolver = resolver_with(mock_response(503), mock_response(200, KEY))

        assert await resolver.resolve_address('alice.com') == KEY
        assert resolver.session.get.call_count == 2

    @pytest.mark.asyncio
    async def test_retries_on_connection_error(self):
        """Test that network errors are retried, then reported."""
        resolver = resolver_with(
            aiohttp.ClientConnectionError("refused"),
            asyncio.TimeoutError(),
            aiohttp.ClientConnectionError("refused"),
            max_retries=2
        )

        with pytest.raises(NameResolutionError, match="alice.com"):
            await resolver.resolve_address('alice.com')
        assert resolver.session.get.call_count == 3

    @pytest.mark.asyncio
    async def test_not_found_fails_without_retry(self):
        """Test that a 404 fails immediately."""
        resolver = resolver_with(mock_response(404))

        with pytest.raises(NameResolutionError, match="HTTP 404"):
            await resolver.resolve_address('alice.com')
        assert resolver.session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_body_without_address_fails(self):
        """Test that a page without an address is a resolution failure."""
        resolver = resolver_with(mock_response(200, '<html></html>'))

        with pytest.raises(NameResolutionError, match="no address"):
            await resolver.resolve_address('alice.com')

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self):
        """Test that a zero TTL forces a new lookup."""
        resolver = resolver_with(mock_response(200, f'{KEY}\nTTL=0'), mock_response(200, 'cd' * 32))
        await resolver.resolve_address('alice.com')
        resolver._cache['alice.com'].fetched_at -= 1

        assert await resolver.resolve_address('alice.com') == 'cd' * 32

    @pytest.mark.asyncio
    async def test_close_releases_session(self):
        """Test that close shuts the session down."""
        resolver = resolver_with()
        session = resolver.session

        await resolver.close()

        session.close.assert_awaited_once()
        assert resolver.session is None

    def test_retry_delay_is_capped(self):
        """Test exponential backoff stays under the maximum."""
        resolver = WellKnownResolver(retry_delay=1.0, max_retry_delay=4.0)

        assert 1.0 <= resolver._calculate_retry_delay(0) <= 1.3
        assert resolver._calculate_retry_delay(10) == 4.0

    def test_from_config(self):
        """Test building a resolver from configuration."""
        config = IndexerConfig(resolver_timeout=3, resolver_max_retries=5, resolver_scheme='http')

        resolver = WellKnownResolver.from_config(config)

        assert resolver.request_timeout == 3
        assert resolver.max_retries == 5
        assert resolver.scheme == 'http'

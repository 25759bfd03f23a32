"""
Tests for debounced index persistence.
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from observability.prometheus_metrics import citizen_registry
from pipelines.persistence import DebouncedWriter
from sources.errors import NotOwnerError
from sources.memory import MemoryStore


def write_count(status):
    return citizen_registry.get_sample_value('citizen_index_writes_total', {'status': status}) or 0.0


class TestDebouncedWriter:
    """Write coalescing per path."""

    @pytest.mark.asyncio
    async def test_burst_collapses_into_one_write(self):
        """Test that rapid writes to one path produce a single write."""
        store = MemoryStore(is_owner=True)
        writer = DebouncedWriter(store, delay=0.05, editable=True)

        for i in range(10):
            writer.schedule_write('/index/a.json', f'{{"n": {i}}}')
            await asyncio.sleep(0.001)

        assert store.version == 0
        await asyncio.sleep(0.15)

        assert store.version == 1
        assert await store.read_file('/index/a.json') == b'{"n": 9}'

    @pytest.mark.asyncio
    async def test_paths_are_independent(self):
        """Test that each path keeps its own timer."""
        store = MemoryStore(is_owner=True)
        writer = DebouncedWriter(store, delay=0.02, editable=True)

        writer.schedule_write('/index/a.json', 'a')
        writer.schedule_write('/index/b.json', 'b')
        assert writer.pending_paths() == ['/index/a.json', '/index/b.json']

        await asyncio.sleep(0.1)

        assert store.version == 2
        assert writer.pending_paths() == []

    @pytest.mark.asyncio
    async def test_not_editable_never_writes(self):
        """Test that a read-only writer drops every write."""
        store = MemoryStore(is_owner=True)
        writer = DebouncedWriter(store, delay=0.01, editable=False)

        writer.schedule_write('/index/a.json', 'a')
        await asyncio.sleep(0.05)

        assert writer.pending_paths() == []
        assert store.version == 0

    @pytest.mark.asyncio
    async def test_flush_writes_pending_immediately(self):
        """Test that flush writes the latest content without waiting."""
        store = MemoryStore(is_owner=True)
        writer = DebouncedWriter(store, delay=60, editable=True)

        writer.schedule_write('/index/a.json', 'first')
        writer.schedule_write('/index/a.json', b'second')
        await writer.flush()

        assert store.version == 1
        assert await store.read_file('/index/a.json') == b'second'
        assert writer.pending_paths() == []

    @pytest.mark.asyncio
    async def test_cancel_all_drops_pending(self):
        """Test that cancelled writes never happen."""
        store = MemoryStore(is_owner=True)
        writer = DebouncedWriter(store, delay=0.01, editable=True)

        writer.schedule_write('/index/a.json', 'a')
        writer.cancel_all()
        await asyncio.sleep(0.05)

        assert store.version == 0

    @pytest.mark.asyncio
    async def test_failed_write_is_logged_not_raised(self, caplog):
        """Test that a store failure is recorded and the writer keeps working."""
        store = MemoryStore(is_owner=False)
        writer = DebouncedWriter(store, delay=0.01, editable=True)
        errors_before = write_count('error')

        writer.schedule_write('/index/a.json', 'a')
        await asyncio.sleep(0.05)

        assert write_count('error') == errors_before + 1
        assert 'Failed to write index file /index/a.json' in caplog.text

    @pytest.mark.asyncio
    async def test_next_mutation_retries(self):
        """Test that a write after a failure goes through."""
        store = AsyncMock()
        store.write_file.side_effect = [NotOwnerError("busy"), None]
        writer = DebouncedWriter(store, delay=0, editable=True)

        writer.schedule_write('/index/a.json', 'a')
        await writer.flush()
        writer.schedule_write('/index/a.json', 'b')
        await writer.flush()

        assert store.write_file.await_count == 2
        store.write_file.assert_awaited_with('/index/a.json', b'b')

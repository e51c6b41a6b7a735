"""Unit tests for the in-memory durable mirror."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from duck_query.domain.entities import CacheEntry, QueryKey
from duck_query.infrastructure.persistence import InMemoryMirror


class TestInMemoryMirror:
    """Test InMemoryMirror."""

    @pytest.mark.asyncio
    async def test_miss_on_empty_mirror(self) -> None:
        """Test lookups on an empty mirror return None."""
        mirror = InMemoryMirror()
        assert await mirror.on_miss(QueryKey("todos")) is None
        assert len(mirror) == 0

    @pytest.mark.asyncio
    async def test_settle_then_miss(self) -> None:
        """Test settled values are returned by later lookups."""
        mirror = InMemoryMirror()
        key = QueryKey("todos", {"page": 1})
        updated_at = datetime(2024, 1, 1, tzinfo=UTC)
        entry = CacheEntry(
            key=key, entry_id=1, result=["a"], has_result=True, updated_at=updated_at
        )

        await mirror.on_settle(key, entry)
        record = await mirror.on_miss(QueryKey("todos", {"page": 1}))

        assert record is not None
        assert record.value == ["a"]
        assert record.updated_at == updated_at

    @pytest.mark.asyncio
    async def test_evict_forgets_key(self) -> None:
        """Test eviction removes the record."""
        mirror = InMemoryMirror()
        key = QueryKey("todos")
        await mirror.seed(key, 1)

        await mirror.on_evict(key)
        await mirror.on_evict(key)
        assert await mirror.on_miss(key) is None

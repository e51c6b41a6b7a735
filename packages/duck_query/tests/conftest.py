"""Shared fixtures for duck-query tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from duck_query import QueryClient
from duck_query.config import QueryClientConfig, QueryDefaultsConfig
from duck_query.infrastructure.monitoring import QueryMetricsCollector


class FakeProducer:
    """Async producer recording its calls.

    ``results`` are returned in order, the last one repeating; exceptions in
    the list are raised instead of returned.
    """

    def __init__(self, *results: Any, delay: float = 0.0) -> None:
        self.results = list(results) or [None]
        self.delay = delay
        self.calls: list[Any] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def __call__(self, args: Any) -> Any:
        index = min(len(self.calls), len(self.results) - 1)
        self.calls.append(args)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results[index]
        if isinstance(result, BaseException):
            raise result
        return result


WaitUntil = Callable[..., Awaitable[None]]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def make_producer() -> type[FakeProducer]:
    """Factory for recording producers."""
    return FakeProducer


@pytest.fixture
def wait_until() -> WaitUntil:
    """Poll a predicate until it holds or the timeout expires."""
    return _wait_until


@pytest.fixture
def config() -> QueryClientConfig:
    """Configuration with short retry delays."""
    return QueryClientConfig(defaults=QueryDefaultsConfig(retry_delay=10))


@pytest_asyncio.fixture
async def client(config: QueryClientConfig) -> AsyncGenerator[QueryClient]:
    """Create a query client and close it after the test."""
    query_client = QueryClient(config, metrics=QueryMetricsCollector("test"), name="test")
    try:
        yield query_client
    finally:
        await query_client.close()

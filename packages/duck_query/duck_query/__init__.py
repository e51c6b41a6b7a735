"""duck-query: cache and fetch orchestration for async, key-addressed resources."""

from __future__ import annotations

from .application.error_handling import RetryPolicy, RetryStrategy
from .application.models import QueryOptions
from .application.query_client import QueryClient
from .application.services import ConsumerHandle
from .config import QueryClientConfig, get_config
from .domain.entities import CacheEntry, ConsumerState, QueryKey
from .domain.enums import FetchStatus, RetryState
from .domain.exceptions import (
    DuckQueryError,
    InvalidBinding,
    MaxRetriesExceeded,
    MirrorError,
    ProducerFailure,
)
from .domain.interfaces import Clock, DurableMirror, MirrorRecord
from .infrastructure.persistence import InMemoryMirror
from .version import __version__

__all__ = [
    "CacheEntry",
    "Clock",
    "ConsumerHandle",
    "ConsumerState",
    "DuckQueryError",
    "DurableMirror",
    "FetchStatus",
    "InMemoryMirror",
    "InvalidBinding",
    "MaxRetriesExceeded",
    "MirrorError",
    "MirrorRecord",
    "ProducerFailure",
    "QueryClient",
    "QueryClientConfig",
    "QueryKey",
    "QueryOptions",
    "RetryPolicy",
    "RetryState",
    "RetryStrategy",
    "__version__",
    "get_config",
]

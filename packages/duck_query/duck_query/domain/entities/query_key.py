"""Structural query key.

A key is a primary name plus an optional parameter payload. Two keys are equal
when their names match and their payloads are structurally equal, regardless
of dict insertion order or list/tuple spelling.
"""

from __future__ import annotations

from collections.abc import Hashable, Mapping, Sequence, Set
from dataclasses import dataclass, field
from typing import Any


def freeze(value: Any) -> Hashable:
    """Convert a parameter payload into a hashable structural identity.

    Args:
        value: Arbitrary parameter payload

    Returns:
        Hashable value that compares equal for structurally equal payloads
    """
    if isinstance(value, Mapping):
        items = [(freeze(k), freeze(v)) for k, v in value.items()]
        return ("__map__", tuple(sorted(items, key=repr)))
    if isinstance(value, Set):
        return ("__set__", frozenset(freeze(item) for item in value))
    if isinstance(value, Sequence) and not isinstance(value, str | bytes):
        return ("__seq__", tuple(freeze(item) for item in value))
    try:
        hash(value)
    except TypeError:
        return ("__repr__", repr(value))
    return value


@dataclass(frozen=True)
class QueryKey:
    """Identifier of a cacheable resource.

    Attributes:
        name: Primary name of the query (used by name-based invalidation)
        params: Optional parameter payload, passed to the producer by default
    """

    name: str
    params: Any = field(default=None, compare=False, hash=False)
    identity: Hashable = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate the key and compute its structural identity."""
        if not self.name:
            raise ValueError("Query key name cannot be empty")
        object.__setattr__(self, "identity", freeze(self.params))

    @classmethod
    def of(cls, value: QueryKey | str | Sequence[Any]) -> QueryKey:
        """Build a key from a key, a bare name or a ``(name, params)`` pair."""
        if isinstance(value, QueryKey):
            return value
        if isinstance(value, str):
            return cls(value)
        if isinstance(value, Sequence) and 1 <= len(value) <= 2:
            name = value[0]
            if not isinstance(name, str):
                raise ValueError(f"Query key name must be a string, got {type(name).__name__}")
            params = value[1] if len(value) == 2 else None
            return cls(name, params)
        raise ValueError(f"Cannot build a query key from {value!r}")

    def matches(self, selector: QueryKey | str) -> bool:
        """Check whether an invalidation selector targets this key.

        A bare name matches every key sharing that primary name; a key matches
        only a structurally equal key.
        """
        if isinstance(selector, str):
            return self.name == selector
        return self == selector

    def __str__(self) -> str:
        if self.params is None:
            return self.name
        return f"{self.name}{self.params!r}"

"""Exceptions for the duck-query engine.

Producer failures are never raised out of the engine: they are wrapped in
``ProducerFailure`` (or ``MaxRetriesExceeded`` once the retry budget is spent)
and stored on the cache entry, where consumers observe them as ``error``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from duck_query.domain.entities import QueryKey


class DuckQueryError(Exception):
    """Base exception for all duck-query errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code for programmatic handling
            details: Additional error context
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}


class DomainError(DuckQueryError):
    """Base class for domain-layer errors."""

    pass


class ApplicationError(DuckQueryError):
    """Base class for application-layer errors."""

    pass


class InfrastructureError(DuckQueryError):
    """Base class for infrastructure-layer errors."""

    pass


class InvalidBinding(DomainError):
    """Raised when a key has no producer to fetch it with.

    Happens when a consumer binds without a producer and none is cached for the
    key, or when a refetch/invalidation targets an unknown key.
    """

    def __init__(self, key: QueryKey, reason: str | None = None, **kwargs: Any) -> None:
        """
        Initialize invalid binding error.

        Args:
            key: Key that could not be bound
            reason: Why the binding is invalid
            **kwargs: Additional error details
        """
        message = f"No producer available for query {key}"
        if reason:
            message += f": {reason}"
        details = {
            "key": str(key),
            "reason": reason,
            **kwargs.pop("details", {}),
        }
        super().__init__(message, error_code="INVALID_BINDING", details=details)
        self.key = key


class ProducerFailure(ApplicationError):
    """A producer call raised or its awaitable rejected."""

    def __init__(self, key: QueryKey, cause: BaseException, retry_count: int = 0) -> None:
        """
        Initialize producer failure.

        Args:
            key: Key whose producer failed
            cause: Original exception raised by the producer
            retry_count: Retries already performed when the failure happened
        """
        message = f"Producer for query {key} failed: {cause}"
        details = {
            "key": str(key),
            "cause_type": type(cause).__name__,
            "retry_count": retry_count,
        }
        super().__init__(message, error_code="PRODUCER_FAILURE", details=details)
        self.key = key
        self.cause = cause
        self.__cause__ = cause


class MaxRetriesExceeded(ApplicationError):
    """Terminal failure after the retry budget of a key is exhausted."""

    def __init__(self, key: QueryKey, retries: int, last_error: BaseException) -> None:
        """
        Initialize max retries error.

        Args:
            key: Key that gave up
            retries: Number of retries performed
            last_error: Exception raised by the final attempt
        """
        message = f"Query {key} failed after {retries} retries: {last_error}"
        details = {
            "key": str(key),
            "retries": retries,
            "cause_type": type(last_error).__name__,
        }
        super().__init__(message, error_code="MAX_RETRIES_EXCEEDED", details=details)
        self.key = key
        self.retries = retries
        self.last_error = last_error
        self.__cause__ = last_error


class MirrorError(InfrastructureError):
    """Raised when the durable mirror cannot load, save or delete a record."""

    def __init__(
        self,
        operation: str,
        key: QueryKey | None = None,
        reason: str | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Initialize mirror error.

        Args:
            operation: Mirror operation that failed (load, save, delete)
            key: Affected key, if any
            reason: Failure reason
            **kwargs: Additional error details
        """
        message = f"Durable mirror operation '{operation}' failed"
        if key is not None:
            message += f" for query {key}"
        if reason:
            message += f": {reason}"
        details = {
            "operation": operation,
            "key": str(key) if key is not None else None,
            "reason": reason,
            **kwargs.pop("details", {}),
        }
        super().__init__(message, error_code="MIRROR_ERROR", details=details)


class ConfigurationError(InfrastructureError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, config_key: str, reason: str, **kwargs: Any) -> None:
        """
        Initialize configuration error.

        Args:
            config_key: Configuration key that has issues
            reason: Reason for configuration error
            **kwargs: Additional error details
        """
        message = f"Configuration error for '{config_key}': {reason}"
        details = {
            "config_key": config_key,
            "reason": reason,
            **kwargs.pop("details", {}),
        }
        super().__init__(message, error_code="CONFIGURATION_ERROR", details=details)

"""Error types raised or recorded by the store façade."""

from __future__ import annotations


class StoreError(RuntimeError):
    """Base class for every pgstore failure."""


class ValidationError(StoreError, ValueError):
    """Raised when caller input is rejected before reaching the engine."""


class StoreConnectionError(StoreError):
    """Raised when the engine cannot open, ping or release the connection."""


class StoreClosedError(StoreConnectionError):
    """Raised when a store is used after it has been closed."""


class MigrationError(StoreError):
    """Raised when the engine refuses to create or extend a table."""


class QueryError(StoreError):
    """Create/read failure recorded in the store's last-operation slot."""


class QueryCancelledError(QueryError):
    """The query context was cancelled or its deadline elapsed."""


class SerializationError(StoreError):
    """Raised when the last read result cannot be encoded."""


__all__ = [
    "MigrationError",
    "QueryCancelledError",
    "QueryError",
    "SerializationError",
    "StoreClosedError",
    "StoreConnectionError",
    "StoreError",
    "ValidationError",
]

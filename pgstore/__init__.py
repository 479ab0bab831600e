"""Connection manager and chainable CRUD façade for PostgreSQL."""

from __future__ import annotations

from .config import (
    AppConfig,
    ConnectionConfig,
    ConnectionDescriptor,
    load_config,
    normalize,
    save_config,
)
from .context import QueryContext
from .engines import AsyncpgEngine, Engine, MemoryEngine
from .errors import (
    MigrationError,
    QueryCancelledError,
    QueryError,
    SerializationError,
    StoreClosedError,
    StoreConnectionError,
    StoreError,
    ValidationError,
)
from .models import Record, ResultSet
from .store import OperationState, Store, open_store

__all__ = [
    "AppConfig",
    "AsyncpgEngine",
    "ConnectionConfig",
    "ConnectionDescriptor",
    "Engine",
    "MemoryEngine",
    "MigrationError",
    "OperationState",
    "QueryCancelledError",
    "QueryContext",
    "QueryError",
    "Record",
    "ResultSet",
    "SerializationError",
    "Store",
    "StoreClosedError",
    "StoreConnectionError",
    "StoreError",
    "ValidationError",
    "load_config",
    "normalize",
    "open_store",
    "save_config",
]

"""Chainable store façade over a relational engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from pydantic_core import PydanticSerializationError

from .config import ConnectionConfig, ConnectionDescriptor, normalize
from .context import QueryContext
from .engines import AsyncpgEngine, Engine
from .errors import (
    QueryError,
    SerializationError,
    StoreClosedError,
    StoreConnectionError,
    StoreError,
    ValidationError,
)
from .models import Record, ResultSet

LOG = logging.getLogger(__name__)

JSON_INDENT = 4


@dataclass(slots=True)
class OperationState:
    """Outcome of the most recent CRUD call on a store."""

    error: StoreError | None = None
    rows_affected: int = 0
    last_read: ResultSet[Any] | None = None


class Store:
    """Chainable CRUD façade over one engine connection.

    CRUD methods never raise for query failures. They record the error and
    the affected-row count in a single last-operation slot and return the
    store, so calls can be chained; check :meth:`err` afterwards. Lifecycle
    methods (``open``, ``ping``, ``close``, ``auto_migrate``) raise.

    The slot is not synchronized: concurrent calls on one instance race and
    the last writer wins. The engine's pool itself is safe to share.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._state = OperationState()
        self._closed = False

    @classmethod
    def open(cls, descriptor: ConnectionDescriptor, *, engine: Engine | None = None) -> Store:
        """Open a connection for ``descriptor`` and wrap it in a store."""

        backend = engine if engine is not None else AsyncpgEngine()
        try:
            backend.open(descriptor)
        except StoreConnectionError:
            raise
        except Exception as exc:
            raise StoreConnectionError(f"Failed to open connection: {exc}") from exc
        return cls(backend)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> OperationState:
        """The live last-operation slot."""

        return self._state

    @property
    def last_read(self) -> ResultSet[Any] | None:
        """Result set captured by the last successful, non-empty :meth:`read_all`."""

        return self._state.last_read

    def err(self) -> StoreError | None:
        return self._state.error

    def rows_affected(self) -> int:
        return self._state.rows_affected

    def ping(self) -> None:
        """Raise :class:`StoreConnectionError` if the database is unreachable."""

        self._ensure_open()
        self._engine.ping()

    def close(self) -> None:
        """Release the connection; calling it again is a no-op."""

        if self._closed:
            return
        self._closed = True
        self._engine.close()

    def auto_migrate(self, *models: type[Record]) -> None:
        """Create missing tables and columns for the given shapes."""

        self._ensure_open()
        self._engine.migrate(*models)

    def create(self, ctx: QueryContext, value: Record | Sequence[Record]) -> Store:
        """Insert one record or a batch of records of the same shape."""

        records = [value] if isinstance(value, Record) else list(value)
        self._execute(lambda: self._engine.create(ctx, records))
        return self

    def read_all(self, ctx: QueryContext, model: ResultSet[Any]) -> Store:
        """Fill ``model`` with every row of its table.

        A successful read that returns rows is captured for :meth:`to_json`;
        an empty or failed read leaves any earlier capture in place.
        """

        self._execute(lambda: self._engine.find(ctx, model))
        if self._state.error is None and self._state.rows_affected != 0:
            self._state.last_read = model
        return self

    def read_by_id(self, ctx: QueryContext, id: int, model: ResultSet[Any]) -> Store:
        """Fill ``model`` with the row whose primary key is ``id``.

        Unlike :meth:`read_all` this never updates the captured result.
        """

        if id < 1:
            self._state.error = ValidationError("id can not be a negative value")
            return self
        self._execute(lambda: self._engine.find(ctx, model, {"id": id}))
        return self

    def to_json(self) -> bytes:
        """Encode the captured result compactly as UTF-8 JSON."""

        return self._encode(indent=None)

    def to_json_indent(self) -> bytes:
        """Encode the captured result as UTF-8 JSON indented by four spaces."""

        return self._encode(indent=JSON_INDENT)

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return f"<Store {status} engine={type(self._engine).__name__}>"

    def _execute(self, operation: Callable[[], int]) -> None:
        if self._closed:
            self._state.error = StoreClosedError("store is closed")
            self._state.rows_affected = 0
            return
        try:
            rows = operation()
        except Exception as exc:
            error = exc if isinstance(exc, StoreError) else QueryError(str(exc))
            if error is not exc:
                error.__cause__ = exc
            LOG.debug("Query failed", extra={"error": str(exc)})
            self._state.error = error
            self._state.rows_affected = 0
            return
        self._state.error = None
        self._state.rows_affected = rows

    def _encode(self, *, indent: int | None) -> bytes:
        captured = self._state.last_read
        if captured is None:
            raise SerializationError("no read result to serialize")
        try:
            return captured.adapter().dump_json(captured.items, indent=indent)
        except (PydanticSerializationError, TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to encode read result: {exc}") from exc

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreClosedError("store is closed")


def open_store(config: ConnectionConfig | None = None, *, engine: Engine | None = None) -> Store:
    """Normalize ``config`` and open a store for it.

    Raises :class:`ValidationError` for an out-of-range port and
    :class:`StoreConnectionError` when the connection cannot be opened.
    """

    descriptor = normalize(config or ConnectionConfig())
    LOG.debug("Opening store", extra={"dsn": descriptor.redacted()})
    return Store.open(descriptor, engine=engine)


__all__ = ["JSON_INDENT", "OperationState", "Store", "open_store"]

"""Relational engines driven by the store façade."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Coroutine, Mapping, Sequence
from typing import Any, Protocol, TypeVar, runtime_checkable

import asyncpg

from . import schema
from .config import ConnectionDescriptor
from .context import QueryContext
from .errors import (
    MigrationError,
    QueryCancelledError,
    QueryError,
    StoreClosedError,
    StoreConnectionError,
)
from .models import Record, ResultSet

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class Engine(Protocol):
    """Data-access interface the store façade drives.

    ``create`` and ``find`` return the number of affected rows and raise
    :class:`~pgstore.errors.QueryError` on failure; lifecycle methods raise
    :class:`~pgstore.errors.StoreConnectionError` or
    :class:`~pgstore.errors.MigrationError`.
    """

    def open(self, descriptor: ConnectionDescriptor) -> None:
        """Open the underlying connection pool."""

    def ping(self) -> None:
        """Check the database is reachable."""

    def close(self) -> None:
        """Release the underlying connection pool."""

    def migrate(self, *models: type[Record]) -> None:
        """Ensure tables exist for the given shapes."""

    def create(self, ctx: QueryContext, records: Sequence[Record]) -> int:
        """Insert records of one shape, writing generated ids back."""

    def find(
        self,
        ctx: QueryContext,
        target: ResultSet[Any],
        where: Mapping[str, object] | None = None,
    ) -> int:
        """Replace ``target`` contents with matching rows."""


def _single_model(records: Sequence[Record]) -> type[Record]:
    if not records:
        raise QueryError("nothing to insert")
    model = type(records[0])
    if any(type(record) is not model for record in records):
        raise QueryError("records passed to one create call must share a shape")
    return model


class AsyncpgEngine:
    """Engine backed by an asyncpg connection pool.

    asyncpg is asyncio-only, so the engine runs its own event loop on a
    daemon thread and blocks the calling thread on each submitted coroutine.
    """

    def __init__(
        self,
        *,
        min_size: int = 1,
        max_size: int = 10,
        connect_timeout: float = 10.0,
    ) -> None:
        self._min_size = min_size
        self._max_size = max_size
        self._connect_timeout = connect_timeout
        self._pool: Any | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self, descriptor: ConnectionDescriptor) -> None:
        if self._pool is not None:
            raise StoreConnectionError("engine is already open")
        self._start_loop()
        try:
            self._pool = self._run(self._open(descriptor), QueryContext(timeout=self._connect_timeout))
        except Exception as exc:
            self._stop_loop()
            LOG.warning(
                "Failed to open connection pool",
                extra={"host": descriptor.host, "port": descriptor.port, "dbname": descriptor.dbname},
            )
            raise StoreConnectionError(
                f"Failed to connect to {descriptor.host}:{descriptor.port}/{descriptor.dbname}: {exc}"
            ) from exc
        LOG.info(
            "Opened connection pool",
            extra={"host": descriptor.host, "port": descriptor.port, "dbname": descriptor.dbname},
        )

    def ping(self) -> None:
        pool = self._require_pool()
        try:
            self._run(pool.fetchval("SELECT 1"), QueryContext(timeout=self._connect_timeout))
        except Exception as exc:
            raise StoreConnectionError(f"Ping failed: {exc}") from exc

    def close(self) -> None:
        pool = self._pool
        if pool is None:
            return
        self._pool = None
        try:
            self._run(pool.close(), QueryContext(timeout=self._connect_timeout))
        except Exception as exc:
            raise StoreConnectionError(f"Failed to close connection pool: {exc}") from exc
        finally:
            self._stop_loop()
        LOG.info("Closed connection pool")

    def migrate(self, *models: type[Record]) -> None:
        pool = self._require_pool()
        for model in models:
            try:
                self._run(self._migrate(pool, model), QueryContext.background())
            except Exception as exc:
                raise MigrationError(f"Failed to migrate {model.__name__}: {exc}") from exc

    def create(self, ctx: QueryContext, records: Sequence[Record]) -> int:
        pool = self._require_pool()
        model = _single_model(records)
        try:
            statement, args = schema.insert_sql(model, records)
        except ValueError as exc:
            raise QueryError(str(exc)) from exc
        LOG.debug("Executing insert", extra={"table": schema.table_name(model), "rows": len(records)})
        rows = self._query(ctx, pool.fetch(statement, *args))
        for record, row in zip(records, rows):
            record.id = row[schema.PRIMARY_KEY]
        return len(rows)

    def find(
        self,
        ctx: QueryContext,
        target: ResultSet[Any],
        where: Mapping[str, object] | None = None,
    ) -> int:
        pool = self._require_pool()
        conditions = dict(where or {})
        statement = schema.select_sql(target.model, conditions)
        LOG.debug("Executing select", extra={"table": schema.table_name(target.model)})
        rows = self._query(ctx, pool.fetch(statement, *conditions.values()))
        target.replace(schema.decode_row(target.model, row) for row in rows)
        return len(rows)

    async def _open(self, descriptor: ConnectionDescriptor) -> Any:
        return await asyncpg.create_pool(
            min_size=self._min_size,
            max_size=self._max_size,
            timeout=self._connect_timeout,
            **descriptor.connect_kwargs(),
        )

    @staticmethod
    async def _migrate(pool: Any, model: type[Record]) -> None:
        table = schema.table_name(model)
        await pool.execute(schema.create_table_sql(model))
        existing = {str(row["column_name"]) for row in await pool.fetch(schema.EXISTING_COLUMNS_SQL, table)}
        for column in schema.columns(model):
            if column.name not in existing:
                LOG.info("Adding column", extra={"table": table, "column": column.name})
                await pool.execute(schema.add_column_sql(model, column))

    def _query(self, ctx: QueryContext, coro: Coroutine[Any, Any, T]) -> T:
        try:
            return self._run(coro, ctx)
        except QueryError:
            raise
        except Exception as exc:
            raise QueryError(str(exc)) from exc

    def _require_pool(self) -> Any:
        if self._pool is None:
            raise StoreClosedError("engine is not open")
        return self._pool

    def _run(self, coro: Coroutine[Any, Any, T], ctx: QueryContext) -> T:
        error = ctx.err()
        if error is not None or self._loop is None:
            coro.close()
            raise error or StoreClosedError("engine is not open")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        unregister = ctx.on_cancel(future.cancel)
        try:
            return future.result(timeout=ctx.remaining())
        except TimeoutError:
            future.cancel()
            raise QueryCancelledError("context deadline exceeded") from None
        except concurrent.futures.CancelledError:
            raise QueryCancelledError("context canceled") from None
        finally:
            unregister()

    def _start_loop(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="pgstore-asyncpg-engine",
            daemon=True,
        )
        self._loop_thread.start()

    def _stop_loop(self) -> None:
        loop, thread = self._loop, self._loop_thread
        self._loop = None
        self._loop_thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=1)
        if not loop.is_running():
            loop.close()


class MemoryEngine:
    """In-process engine keeping rows in dictionaries.

    Mirrors the PostgreSQL engine's observable behavior closely enough for
    demos and tests: tables must be migrated before use, ids come from a
    per-table sequence and reads return rows ordered by id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tables: dict[str, dict[int, dict[str, object]]] = {}
        self._sequences: dict[str, int] = {}
        self._descriptor: ConnectionDescriptor | None = None
        self._open = False

    @property
    def descriptor(self) -> ConnectionDescriptor | None:
        """Descriptor passed to the last :meth:`open` call."""

        return self._descriptor

    @property
    def is_open(self) -> bool:
        return self._open

    def tables(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._tables))

    def open(self, descriptor: ConnectionDescriptor) -> None:
        if self._open:
            raise StoreConnectionError("engine is already open")
        self._descriptor = descriptor
        self._open = True
        LOG.info("Opened in-memory engine", extra={"dbname": descriptor.dbname})

    def ping(self) -> None:
        if not self._open:
            raise StoreConnectionError("Ping failed: connection is closed")

    def close(self) -> None:
        self._open = False

    def migrate(self, *models: type[Record]) -> None:
        self._require_open()
        with self._lock:
            for model in models:
                if not (isinstance(model, type) and issubclass(model, Record)):
                    raise MigrationError(f"{model!r} is not a Record subclass")
                self._tables.setdefault(schema.table_name(model), {})

    def create(self, ctx: QueryContext, records: Sequence[Record]) -> int:
        self._require_open()
        self._check(ctx)
        model = _single_model(records)
        try:
            schema.check_explicit_ids(records)
        except ValueError as exc:
            raise QueryError(str(exc)) from exc
        with self._lock:
            table = self._table(model)
            pending: list[tuple[int, Record]] = []
            for record in records:
                key = record.id
                if key is None:
                    key = self._sequences.get(schema.table_name(model), 0) + 1
                    self._sequences[schema.table_name(model)] = key
                if key in table or any(key == taken for taken, _ in pending):
                    raise QueryError(f'duplicate key value violates unique constraint "{schema.table_name(model)}_pkey"')
                pending.append((key, record))
            for key, record in pending:
                record.id = key
                table[key] = record.model_dump()
        return len(pending)

    def find(
        self,
        ctx: QueryContext,
        target: ResultSet[Any],
        where: Mapping[str, object] | None = None,
    ) -> int:
        self._require_open()
        self._check(ctx)
        conditions = dict(where or {})
        with self._lock:
            table = self._table(target.model)
            rows = [
                dict(row)
                for _, row in sorted(table.items())
                if all(row.get(key) == value for key, value in conditions.items())
            ]
        target.replace(target.model.model_validate(row) for row in rows)
        return len(rows)

    def _table(self, model: type[Record]) -> dict[int, dict[str, object]]:
        name = schema.table_name(model)
        try:
            return self._tables[name]
        except KeyError:
            raise QueryError(f'relation "{name}" does not exist') from None

    def _require_open(self) -> None:
        if not self._open:
            raise StoreClosedError("engine is not open")

    @staticmethod
    def _check(ctx: QueryContext) -> None:
        error = ctx.err()
        if error is not None:
            raise error


__all__ = [
    "AsyncpgEngine",
    "Engine",
    "MemoryEngine",
]

"""Tests for the asyncpg and in-memory engines."""

from __future__ import annotations

import asyncio
import threading
from typing import Any

import anyio.to_thread
import pytest

from pgstore.config import ConnectionConfig, normalize
from pgstore.context import QueryContext
from pgstore.engines import AsyncpgEngine, Engine, MemoryEngine
from pgstore.errors import (
    MigrationError,
    QueryCancelledError,
    QueryError,
    StoreClosedError,
    StoreConnectionError,
)
from pgstore.models import Record, ResultSet


class Account(Record):
    email: str
    active: bool = True


class Order(Record):
    total: float


class _FakePool:
    def __init__(
        self,
        fetch_results: list[list[dict[str, Any]]] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.fetch_results = list(fetch_results or [])
        self.error = error
        self.delay = delay
        self.fetch_calls: list[tuple[str, tuple[object, ...]]] = []
        self.executed: list[str] = []
        self.closed = False

    async def fetch(self, sql: str, *args: object) -> list[dict[str, Any]]:
        self.fetch_calls.append((sql, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.fetch_results.pop(0) if self.fetch_results else []

    async def fetchval(self, sql: str) -> int:
        if self.error is not None:
            raise self.error
        return 1

    async def execute(self, sql: str) -> str:
        self.executed.append(sql)
        return "OK"

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def descriptor():  # type: ignore[no-untyped-def]
    return normalize(ConnectionConfig(port=6543, dbname="shop", time_zone="UTC"))


@pytest.fixture
def patch_pool(monkeypatch: pytest.MonkeyPatch):  # type: ignore[no-untyped-def]
    captured: dict[str, Any] = {}

    def _install(pool: _FakePool) -> dict[str, Any]:
        async def _create_pool(**kwargs: Any) -> _FakePool:
            captured.update(kwargs)
            return pool

        monkeypatch.setattr("pgstore.engines.asyncpg.create_pool", _create_pool)
        return captured

    return _install


def test_engines_satisfy_protocol() -> None:
    assert isinstance(AsyncpgEngine(), Engine)
    assert isinstance(MemoryEngine(), Engine)


def test_asyncpg_engine_opens_pool_with_descriptor_settings(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool()
    captured = patch_pool(pool)
    engine = AsyncpgEngine(min_size=2, max_size=5, connect_timeout=1.5)

    engine.open(descriptor)
    try:
        assert engine.is_open is True
        assert captured["host"] == "localhost"
        assert captured["port"] == 6543
        assert captured["database"] == "shop"
        assert captured["ssl"] is False
        assert captured["server_settings"] == {"TimeZone": "UTC"}
        assert (captured["min_size"], captured["max_size"], captured["timeout"]) == (2, 5, 1.5)
        engine.ping()
    finally:
        engine.close()

    assert pool.closed is True
    assert engine.is_open is False


def test_asyncpg_engine_surfaces_connection_errors(descriptor, monkeypatch: pytest.MonkeyPatch) -> None:  # type: ignore[no-untyped-def]
    async def _broken_pool(**kwargs: Any) -> None:
        raise OSError("connection refused")

    monkeypatch.setattr("pgstore.engines.asyncpg.create_pool", _broken_pool)
    engine = AsyncpgEngine()

    with pytest.raises(StoreConnectionError, match="connection refused"):
        engine.open(descriptor)
    assert engine.is_open is False


def test_asyncpg_engine_ping_failure(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool(error=OSError("server closed the connection"))
    patch_pool(pool)
    engine = AsyncpgEngine()
    engine.open(descriptor)

    try:
        with pytest.raises(StoreConnectionError, match="Ping failed"):
            engine.ping()
    finally:
        engine.close()


def test_asyncpg_engine_create_writes_back_generated_ids(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool([[{"id": 7}, {"id": 8}]])
    patch_pool(pool)
    engine = AsyncpgEngine()
    engine.open(descriptor)
    records = [Account(email="anna@example.com"), Account(email="ben@example.com", active=False)]

    try:
        affected = engine.create(QueryContext.background(), records)
    finally:
        engine.close()

    assert affected == 2
    assert [record.id for record in records] == [7, 8]
    sql, args = pool.fetch_calls[0]
    assert sql.startswith('INSERT INTO "accounts" ("email", "active")')
    assert args == ("anna@example.com", True, "ben@example.com", False)


def test_asyncpg_engine_find_fills_target(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool([[{"id": 3, "email": "cara@example.com", "active": True}]])
    patch_pool(pool)
    engine = AsyncpgEngine()
    engine.open(descriptor)
    target = ResultSet(Account)

    try:
        affected = engine.find(QueryContext.background(), target, {"id": 3})
    finally:
        engine.close()

    assert affected == 1
    assert target.items == [Account(id=3, email="cara@example.com")]
    sql, args = pool.fetch_calls[0]
    assert 'WHERE "id" = $1' in sql
    assert args == (3,)


def test_asyncpg_engine_wraps_query_failures(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool(error=RuntimeError('relation "accounts" does not exist'))
    patch_pool(pool)
    engine = AsyncpgEngine()
    engine.open(descriptor)

    try:
        with pytest.raises(QueryError, match="does not exist"):
            engine.find(QueryContext.background(), ResultSet(Account))
    finally:
        engine.close()


def test_asyncpg_engine_aborts_query_at_deadline(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool(delay=5.0)
    patch_pool(pool)
    engine = AsyncpgEngine()
    engine.open(descriptor)

    try:
        with pytest.raises(QueryCancelledError, match="deadline exceeded"):
            engine.find(QueryContext(timeout=0.05), ResultSet(Account))
    finally:
        engine.close()


def test_asyncpg_engine_aborts_query_on_cancel(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool(delay=5.0)
    patch_pool(pool)
    engine = AsyncpgEngine()
    engine.open(descriptor)
    ctx = QueryContext()
    timer = threading.Timer(0.05, ctx.cancel)
    timer.start()

    try:
        with pytest.raises(QueryCancelledError, match="canceled"):
            engine.find(ctx, ResultSet(Account))
    finally:
        timer.cancel()
        engine.close()


def test_asyncpg_engine_skips_pool_for_cancelled_context(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool()
    patch_pool(pool)
    engine = AsyncpgEngine()
    engine.open(descriptor)
    ctx = QueryContext()
    ctx.cancel()

    try:
        with pytest.raises(QueryCancelledError):
            engine.find(ctx, ResultSet(Account))
    finally:
        engine.close()

    assert pool.fetch_calls == []


def test_asyncpg_engine_migrate_adds_missing_columns(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool([[{"column_name": "id"}, {"column_name": "email"}]])
    patch_pool(pool)
    engine = AsyncpgEngine()
    engine.open(descriptor)

    try:
        engine.migrate(Account)
    finally:
        engine.close()

    assert pool.executed[0].startswith('CREATE TABLE IF NOT EXISTS "accounts"')
    assert pool.executed[1:] == ['ALTER TABLE "accounts" ADD COLUMN IF NOT EXISTS "active" BOOLEAN']
    assert pool.fetch_calls[0][1] == ("accounts",)


def test_asyncpg_engine_requires_open_pool() -> None:
    engine = AsyncpgEngine()

    with pytest.raises(StoreClosedError):
        engine.find(QueryContext.background(), ResultSet(Account))
    with pytest.raises(StoreClosedError):
        engine.ping()
    engine.close()


def test_memory_engine_requires_migration_before_use(descriptor) -> None:  # type: ignore[no-untyped-def]
    engine = MemoryEngine()
    engine.open(descriptor)

    with pytest.raises(QueryError, match='relation "accounts" does not exist'):
        engine.create(QueryContext.background(), [Account(email="anna@example.com")])


def test_memory_engine_create_and_find(descriptor) -> None:  # type: ignore[no-untyped-def]
    engine = MemoryEngine()
    engine.open(descriptor)
    engine.migrate(Account, Order)
    ctx = QueryContext.background()

    created = engine.create(ctx, [Account(email="anna@example.com"), Account(email="ben@example.com")])
    everyone = ResultSet(Account)
    engine.find(ctx, everyone)
    single = ResultSet(Account)
    found = engine.find(ctx, single, {"id": 2})

    assert created == 2
    assert [account.email for account in everyone] == ["anna@example.com", "ben@example.com"]
    assert found == 1
    assert single.first() == Account(id=2, email="ben@example.com")
    assert engine.tables() == ("accounts", "orders")
    assert engine.descriptor == descriptor


def test_memory_engine_rejects_duplicate_ids(descriptor) -> None:  # type: ignore[no-untyped-def]
    engine = MemoryEngine()
    engine.open(descriptor)
    engine.migrate(Account)
    ctx = QueryContext.background()
    engine.create(ctx, [Account(id=1, email="anna@example.com")])

    with pytest.raises(QueryError, match="duplicate key"):
        engine.create(ctx, [Account(id=1, email="again@example.com")])


def test_memory_engine_rejects_mixed_shapes(descriptor) -> None:  # type: ignore[no-untyped-def]
    engine = MemoryEngine()
    engine.open(descriptor)
    engine.migrate(Account, Order)

    with pytest.raises(QueryError, match="share a shape"):
        engine.create(QueryContext.background(), [Account(email="a@example.com"), Order(total=1.0)])


def test_memory_engine_honours_cancelled_context(descriptor) -> None:  # type: ignore[no-untyped-def]
    engine = MemoryEngine()
    engine.open(descriptor)
    engine.migrate(Account)

    with pytest.raises(QueryCancelledError):
        engine.find(QueryContext(timeout=0), ResultSet(Account))


def test_memory_engine_rejects_non_record_shapes(descriptor) -> None:  # type: ignore[no-untyped-def]
    engine = MemoryEngine()
    engine.open(descriptor)

    with pytest.raises(MigrationError):
        engine.migrate(dict)  # type: ignore[arg-type]


def test_memory_engine_after_close(descriptor) -> None:  # type: ignore[no-untyped-def]
    engine = MemoryEngine()
    engine.open(descriptor)
    engine.close()

    with pytest.raises(StoreConnectionError):
        engine.ping()
    with pytest.raises(StoreClosedError):
        engine.find(QueryContext.background(), ResultSet(Account))


@pytest.mark.anyio
async def test_asyncpg_engine_usable_from_running_event_loop(descriptor, patch_pool) -> None:  # type: ignore[no-untyped-def]
    pool = _FakePool([[{"id": 1, "email": "anna@example.com", "active": True}]])
    patch_pool(pool)
    engine = AsyncpgEngine()
    await anyio.to_thread.run_sync(engine.open, descriptor)
    target = ResultSet(Account)

    try:
        affected = await anyio.to_thread.run_sync(engine.find, QueryContext.background(), target)
    finally:
        await anyio.to_thread.run_sync(engine.close)

    assert affected == 1
    assert target.first() == Account(id=1, email="anna@example.com")


def test_memory_engine_rejects_mixed_explicit_and_generated_ids(descriptor) -> None:  # type: ignore[no-untyped-def]
    engine = MemoryEngine()
    engine.open(descriptor)
    engine.migrate(Account)
    ctx = QueryContext.background()
    records = [Account(id=5, email="anna@example.com"), Account(email="ben@example.com")]

    with pytest.raises(QueryError, match="explicit and generated ids"):
        engine.create(ctx, records)

    everyone = ResultSet(Account)
    assert engine.find(ctx, everyone) == 0
    assert records[1].id is None

"""Map Record shapes onto PostgreSQL tables and build statements for them."""

from __future__ import annotations

import re
import types
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Iterable, Sequence, Union, get_args, get_origin
from uuid import UUID

from pydantic_core import from_json, to_json

from .models import Record

PRIMARY_KEY = "id"

# Order matters: bool is a subclass of int.
_TYPE_MAP: tuple[tuple[type, str], ...] = (
    (bool, "BOOLEAN"),
    (int, "BIGINT"),
    (float, "DOUBLE PRECISION"),
    (Decimal, "NUMERIC"),
    (str, "TEXT"),
    (bytes, "BYTEA"),
    (datetime, "TIMESTAMPTZ"),
    (date, "DATE"),
    (time, "TIME"),
    (UUID, "UUID"),
)
JSON_TYPE = "JSONB"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


@dataclass(frozen=True, slots=True)
class Column:
    """Physical column derived from a Record field."""

    name: str
    sql_type: str
    nullable: bool
    primary_key: bool = False

    @property
    def is_json(self) -> bool:
        return self.sql_type == JSON_TYPE

    def ddl(self) -> str:
        if self.primary_key:
            return f"{quote_ident(self.name)} BIGSERIAL PRIMARY KEY"
        null = "" if self.nullable else " NOT NULL"
        return f"{quote_ident(self.name)} {self.sql_type}{null}"


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def table_name(model: type[Record]) -> str:
    """Explicit ``__tablename__`` or the pluralized snake_case class name."""

    if model.__tablename__:
        return model.__tablename__
    snake = _CAMEL_BOUNDARY.sub("_", model.__name__).lower()
    return snake if snake.endswith("s") else f"{snake}s"


def columns(model: type[Record]) -> tuple[Column, ...]:
    result: list[Column] = []
    for name, field in model.model_fields.items():
        if name == PRIMARY_KEY:
            result.append(Column(name=name, sql_type="BIGINT", nullable=False, primary_key=True))
            continue
        base, optional = _unwrap_optional(field.annotation)
        result.append(
            Column(
                name=name,
                sql_type=column_type(base),
                nullable=optional or not field.is_required(),
            )
        )
    return tuple(result)


def column_type(annotation: Any) -> str:
    """PostgreSQL type for a (non-optional) Python annotation."""

    if isinstance(annotation, type) and get_origin(annotation) is None:
        for python_type, sql_type in _TYPE_MAP:
            if issubclass(annotation, python_type):
                return sql_type
    return JSON_TYPE


def create_table_sql(model: type[Record]) -> str:
    body = ",\n    ".join(column.ddl() for column in columns(model))
    return f"CREATE TABLE IF NOT EXISTS {quote_ident(table_name(model))} (\n    {body}\n)"


def add_column_sql(model: type[Record], column: Column) -> str:
    # New columns on a populated table cannot be NOT NULL without a default.
    relaxed = Column(name=column.name, sql_type=column.sql_type, nullable=True)
    return f"ALTER TABLE {quote_ident(table_name(model))} ADD COLUMN IF NOT EXISTS {relaxed.ddl()}"


EXISTING_COLUMNS_SQL = """
    SELECT column_name
    FROM information_schema.columns
    WHERE table_schema = current_schema() AND table_name = $1
"""


def check_explicit_ids(records: Sequence[Record]) -> bool:
    """Return True when every record carries its own id; reject a mix of both."""

    explicit = [record.id is not None for record in records]
    if any(explicit) and not all(explicit):
        raise ValueError("cannot mix records with explicit and generated ids in one insert")
    return all(explicit)


def insert_sql(model: type[Record], records: Sequence[Record]) -> tuple[str, list[object]]:
    """Multi-row INSERT returning generated ids, plus its positional arguments."""

    if not records:
        raise ValueError("nothing to insert")
    explicit = check_explicit_ids(records)
    targets = [column for column in columns(model) if not column.primary_key or explicit]
    names = ", ".join(quote_ident(column.name) for column in targets)
    rows: list[str] = []
    args: list[object] = []
    for record in records:
        placeholders: list[str] = []
        for column in targets:
            args.append(encode_value(column, getattr(record, column.name)))
            placeholders.append(f"${len(args)}")
        rows.append(f"({', '.join(placeholders)})")
    statement = (
        f"INSERT INTO {quote_ident(table_name(model))} ({names}) "
        f"VALUES {', '.join(rows)} RETURNING {quote_ident(PRIMARY_KEY)}"
    )
    return statement, args


def select_sql(model: type[Record], where: Iterable[str] = ()) -> str:
    names = ", ".join(quote_ident(column.name) for column in columns(model))
    statement = f"SELECT {names} FROM {quote_ident(table_name(model))}"
    conditions = [f"{quote_ident(name)} = ${index}" for index, name in enumerate(where, start=1)]
    if conditions:
        statement += " WHERE " + " AND ".join(conditions)
    return statement + f" ORDER BY {quote_ident(PRIMARY_KEY)}"


def encode_value(column: Column, value: object) -> object:
    if column.is_json and value is not None:
        return to_json(value).decode()
    return value


def decode_row(model: type[Record], row: Any) -> Record:
    """Build a record from a driver row (mapping-like)."""

    values: dict[str, object] = {}
    for column in columns(model):
        value = row[column.name]
        if column.is_json and isinstance(value, (str, bytes)):
            value = from_json(value)
        values[column.name] = value
    return model.model_validate(values)


def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        members = [arg for arg in get_args(annotation) if arg is not type(None)]
        optional = len(members) != len(get_args(annotation))
        if len(members) == 1:
            return members[0], optional
        return annotation, optional
    return annotation, False


__all__ = [
    "Column",
    "EXISTING_COLUMNS_SQL",
    "PRIMARY_KEY",
    "add_column_sql",
    "check_explicit_ids",
    "column_type",
    "columns",
    "create_table_sql",
    "decode_row",
    "encode_value",
    "insert_sql",
    "quote_ident",
    "select_sql",
    "table_name",
]

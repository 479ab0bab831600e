"""Record shapes and read targets shared by the store and its engines."""

from __future__ import annotations

from typing import ClassVar, Generic, Iterable, Iterator, TypeVar, overload

from pydantic import BaseModel, TypeAdapter


class Record(BaseModel):
    """Base class for table shapes.

    Subclasses declare columns as pydantic fields. ``id`` is the primary
    key; leave it unset to have the database generate it on insert.
    """

    __tablename__: ClassVar[str | None] = None

    id: int | None = None


RecordT = TypeVar("RecordT", bound=Record)


class ResultSet(Generic[RecordT]):
    """Typed, list-like target that read operations fill in place."""

    def __init__(self, model: type[RecordT], items: Iterable[RecordT] = ()) -> None:
        if not (isinstance(model, type) and issubclass(model, Record)):
            raise TypeError(f"{model!r} is not a Record subclass")
        self._model = model
        self._items: list[RecordT] = list(items)

    @property
    def model(self) -> type[RecordT]:
        return self._model

    @property
    def items(self) -> list[RecordT]:
        return self._items

    def replace(self, records: Iterable[RecordT]) -> None:
        """Swap the current contents for ``records``."""

        self._items = list(records)

    def first(self) -> RecordT | None:
        return self._items[0] if self._items else None

    def adapter(self) -> TypeAdapter[list[RecordT]]:
        """Pydantic adapter used to encode and decode the contents."""

        return TypeAdapter(list[self._model])  # type: ignore[name-defined]

    def __iter__(self) -> Iterator[RecordT]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    @overload
    def __getitem__(self, index: int) -> RecordT: ...

    @overload
    def __getitem__(self, index: slice) -> list[RecordT]: ...

    def __getitem__(self, index):  # type: ignore[no-untyped-def]
        return self._items[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResultSet):
            return NotImplemented
        return self._model is other._model and self._items == other._items

    def __repr__(self) -> str:
        return f"ResultSet({self._model.__name__}, {len(self._items)} row(s))"


__all__ = ["Record", "RecordT", "ResultSet"]

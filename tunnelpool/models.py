"""Shared dataclasses used across driver, pool and facade modules."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, overload

Row = Mapping[str, Any]

_ROW_RETURNING = {"select", "with", "show", "values", "describe", "desc", "explain"}


@dataclass(frozen=True, slots=True)
class QueryResult(Sequence[Row]):
    """Rows returned by a statement, in server order.

    Rows are read-only views because results are shared through the cache;
    copy a row with ``dict(row)`` to reshape it.
    """

    rows: tuple[Row, ...] = ()
    columns: tuple[str, ...] = ()
    row_count: int = 0
    last_insert_id: int | None = None
    elapsed_ms: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "rows", tuple(MappingProxyType(dict(row)) for row in self.rows))

    @overload
    def __getitem__(self, index: int) -> Row: ...

    @overload
    def __getitem__(self, index: slice) -> tuple[Row, ...]: ...

    def __getitem__(self, index: int | slice) -> Row | tuple[Row, ...]:
        return self.rows[index]

    def __len__(self) -> int:
        return len(self.rows)

    def first(self) -> Row | None:
        return self.rows[0] if self.rows else None


def returns_rows(statement: str) -> bool:
    """Whether the statement is a read that produces a result set."""

    token = statement.lstrip().lstrip("(").split(None, 1)
    if not token:
        return False
    return token[0].lower() in _ROW_RETURNING


__all__ = ["QueryResult", "Row", "returns_rows"]

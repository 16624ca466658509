"""RowStore Protocol + Filter predicates.

The portal treats its relational store as an opaque row store: every caller
speaks in terms of a table name, a list of column predicates and plain dict
rows. Two backends satisfy the Protocol:

    sqlite_backend.py   - LocalSQLiteStore (aiosqlite, WAL, user_version guard)
    supabase_backend.py - SupabaseStore (PostgREST via the supabase async client)

Selection happens in factory.py.

Error contract: store methods DO raise (health_check excepted). Callers wrap
them in portal.utils.retry so transient failures are retried and terminal
ones surface unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional, Protocol, Sequence, runtime_checkable

FilterOp = Literal["eq", "neq", "lt", "lte", "gt", "gte", "is_null", "not_null"]

Row = dict[str, Any]


# ─── Filter ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Filter:
    """One column predicate. A list of Filters is AND-ed together."""

    column: str
    op: FilterOp
    value: Any = None


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def is_null(column: str) -> Filter:
    return Filter(column, "is_null")


def not_null(column: str) -> Filter:
    return Filter(column, "not_null")


# ─── RowStore Protocol ────────────────────────────────────────────────────────


@runtime_checkable
class RowStore(Protocol):
    """Predicate-based CRUD over the portal tables.

    Tables: api_keys, sessions, admin_users, activity_log.
    Rows are plain dicts. JSON columns (api_keys.scopes, activity_log.metadata)
    round-trip as Python lists/dicts; boolean columns as bool; timestamps as
    ISO-8601 strings.
    """

    backend: str
    """Short backend label reported by the health endpoint."""

    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        *,
        columns: Optional[Sequence[str]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Row]:
        """Return rows matching all filters."""
        ...

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        """Count rows matching all filters."""
        ...

    async def insert(self, table: str, row: Row) -> Row:
        """Insert one row (must carry its own ``id``) and return it as stored."""
        ...

    async def update(self, table: str, values: Row, filters: Sequence[Filter]) -> list[Row]:
        """Apply ``values`` to every matching row. Returns the updated rows."""
        ...

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        """Delete matching rows. Returns the number deleted."""
        ...

    async def health_check(self, table: str) -> bool:
        """True if ``table`` can be queried. Must not raise."""
        ...

    async def close(self) -> None:
        """Release connections. Called during graceful shutdown."""
        ...

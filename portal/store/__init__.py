"""Portal row store package.

Re-exports the public API for ergonomic imports:

    from portal.store import RowStore, Filter, eq, is_null

Layout:
    protocol.py         - RowStore Protocol + Filter predicates
    sqlite_backend.py   - LocalSQLiteStore (aiosqlite, WAL mode, PRAGMA version guard)
    supabase_backend.py - SupabaseStore (async client, 5s timeout, errors propagate)
    factory.py          - create_row_store() - backend selection by env vars
"""

from portal.store.protocol import (
    Filter,
    FilterOp,
    Row,
    RowStore,
    eq,
    gt,
    gte,
    is_null,
    lt,
    lte,
    neq,
    not_null,
)

__all__ = [
    "Filter",
    "FilterOp",
    "Row",
    "RowStore",
    "eq",
    "gt",
    "gte",
    "is_null",
    "lt",
    "lte",
    "neq",
    "not_null",
]

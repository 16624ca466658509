"""SupabaseStore - RowStore over Supabase's PostgREST API.

Every query is wrapped in asyncio.wait_for(timeout=_SUPABASE_TIMEOUT_S).
Errors are logged and RE-RAISED: the retry executor decides whether a
failure is transient (timeouts, 5xx, 429) or terminal.

Environment:
  SUPABASE_URL  - required for SupabaseStore selection in factory.py
  SUPABASE_KEY  - required (service role key, not anon key)

The tables must already exist in the Supabase project with the same columns
as LocalSQLiteStore; scopes/metadata are jsonb, is_active is boolean.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence

from supabase import create_async_client

from portal.store.protocol import Filter, Row
from portal.utils.logger import get_logger

logger = get_logger(__name__)

_SUPABASE_TIMEOUT_S = 5.0
"""All Supabase operations are wrapped in asyncio.wait_for(timeout=_SUPABASE_TIMEOUT_S)."""

_MAX_RANGE_END = 2**31 - 1


class SupabaseStore:
    """Async Supabase row store.

    Usage:
        store = SupabaseStore(url="https://...", key="service-role-key")
        await store.initialize()
        rows = await store.select("api_keys", [eq("is_active", True)], order_by="created_at")
        await store.close()
    """

    backend = "supabase"

    def __init__(
        self,
        url: str,
        key: str,
        timeout_s: float = _SUPABASE_TIMEOUT_S,
    ) -> None:
        self._url = url
        self._key = key
        self._timeout_s = timeout_s
        self._client: Optional[Any] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create the async Supabase client. Failures propagate (startup refused)."""
        try:
            self._client = await asyncio.wait_for(
                create_async_client(self._url, self._key),
                timeout=self._timeout_s,
            )
        except Exception as exc:
            logger.error(
                "supabase_store_init_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        logger.info("supabase_store_initialized", timeout_s=self._timeout_s)

    async def close(self) -> None:
        """Drop the client (HTTP clients are stateless)."""
        self._client = None
        logger.debug("supabase_store_closed")

    # ── RowStore Protocol Methods ─────────────────────────────────────────────

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
        query = self._table(table).select(",".join(columns) if columns else "*")
        query = _apply_filters(query, filters)
        if order_by is not None:
            query = query.order(order_by, desc=descending)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)
        elif offset:
            query = query.range(offset, _MAX_RANGE_END)

        response = await self._execute(query, "select", table)
        return list(response.data or [])

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        query = self._table(table).select("id", count="exact")
        query = _apply_filters(query, filters)
        response = await self._execute(query, "count", table)
        return response.count if response.count is not None else 0

    async def insert(self, table: str, row: Row) -> Row:
        if not row.get("id"):
            raise ValueError(f"insert into {table} requires an 'id'")
        response = await self._execute(self._table(table).insert(row), "insert", table)
        data = response.data or []
        return data[0] if data else dict(row)

    async def update(self, table: str, values: Row, filters: Sequence[Filter]) -> list[Row]:
        if not values:
            raise ValueError("update requires at least one column")
        query = _apply_filters(self._table(table).update(values), filters)
        response = await self._execute(query, "update", table)
        return list(response.data or [])

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        query = _apply_filters(self._table(table).delete(), filters)
        response = await self._execute(query, "delete", table)
        # PostgREST returns the deleted rows (return=representation)
        return len(response.data) if response.data else 0

    async def health_check(self, table: str) -> bool:
        """True if ``table`` answers a one-row select within the timeout."""
        if self._client is None:
            return False
        try:
            response = await asyncio.wait_for(
                self._client.table(table).select("id").limit(1).execute(),
                timeout=self._timeout_s,
            )
            return response is not None
        except Exception as exc:
            logger.error(
                "supabase_health_check_failed",
                table=table,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _table(self, table: str) -> Any:
        if self._client is None:
            raise RuntimeError("Store not initialized - call initialize() first")
        return self._client.table(table)

    async def _execute(self, query: Any, operation: str, table: str) -> Any:
        try:
            return await asyncio.wait_for(query.execute(), timeout=self._timeout_s)
        except Exception as exc:
            logger.error(
                "supabase_query_failed",
                operation=operation,
                table=table,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise


def _apply_filters(query: Any, filters: Sequence[Filter]) -> Any:
    """Apply Filter predicates to a postgrest-py query builder."""
    for f in filters:
        if f.op == "is_null" or (f.op == "eq" and f.value is None):
            query = query.is_(f.column, "null")
        elif f.op == "not_null" or (f.op == "neq" and f.value is None):
            query = query.not_.is_(f.column, "null")
        else:
            query = getattr(query, f.op)(f.column, f.value)
    return query

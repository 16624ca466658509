"""LocalSQLiteStore - aiosqlite-based RowStore.

Uses aiosqlite EXCLUSIVELY; the stdlib sqlite3 module is never called
directly from the event loop.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent reads while writing)
  - Schema version guard: PRAGMA user_version=1 - RuntimeError on mismatch,
    the FastAPI lifespan refuses startup
  - Long-lived connection: opened in initialize(), closed in close()
  - Identifiers (table/column names) are validated against the live schema;
    all values go through ? placeholders
  - JSON columns (api_keys.scopes, activity_log.metadata) and boolean columns
    (api_keys.is_active) are encoded/decoded transparently
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional, Sequence

import aiosqlite

from portal.store.protocol import Filter, Row
from portal.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS admin_users (
    id              TEXT PRIMARY KEY,
    username        TEXT NOT NULL UNIQUE,
    email           TEXT,
    password_hash   TEXT NOT NULL,
    created_by      TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS api_keys (
    id                          TEXT PRIMARY KEY,
    key_name                    TEXT NOT NULL,
    api_key                     TEXT NOT NULL,
    api_key_prefix              TEXT NOT NULL,
    api_key_suffix              TEXT NOT NULL,
    environment                 TEXT NOT NULL CHECK(environment IN ('live', 'test')),
    scopes                      TEXT NOT NULL DEFAULT '[]',
    created_by                  TEXT,
    created_at                  TEXT NOT NULL,
    updated_at                  TEXT NOT NULL,
    last_used_at                TEXT,
    usage_count                 INTEGER NOT NULL DEFAULT 0,
    rate_window_started_at      TEXT,
    rate_window_count           INTEGER NOT NULL DEFAULT 0,
    expires_at                  TEXT,
    is_active                   INTEGER NOT NULL DEFAULT 1,
    notes                       TEXT,
    rotated_from_key_id         TEXT,
    grace_period_expires_at     TEXT
);

CREATE INDEX IF NOT EXISTS idx_api_keys_active_created
    ON api_keys(is_active, created_at);

CREATE INDEX IF NOT EXISTS idx_api_keys_grace
    ON api_keys(grace_period_expires_at);

CREATE TABLE IF NOT EXISTS sessions (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    session_token   TEXT NOT NULL UNIQUE,
    expires_at      TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activity_log (
    id                  TEXT PRIMARY KEY,
    event_type          TEXT NOT NULL,
    description         TEXT NOT NULL,
    severity            TEXT NOT NULL CHECK(severity IN ('info', 'warning', 'error', 'critical')),
    created_by_user     TEXT,
    created_by_api_key  TEXT,
    ip_address          TEXT,
    user_agent          TEXT,
    metadata            TEXT,
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_log_created
    ON activity_log(created_at DESC);
"""

_SCHEMA_VERSION = 1

_JSON_COLUMNS: dict[str, frozenset[str]] = {
    "api_keys": frozenset({"scopes"}),
    "activity_log": frozenset({"metadata"}),
}

_BOOL_COLUMNS: dict[str, frozenset[str]] = {
    "api_keys": frozenset({"is_active"}),
}

_OPERATORS: dict[str, str] = {
    "eq": "=",
    "neq": "!=",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
}


# ─── Row codecs ───────────────────────────────────────────────────────────────


def _encode_value(table: str, column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _JSON_COLUMNS.get(table, ()):
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _decode_row(table: str, row: aiosqlite.Row) -> Row:
    """aiosqlite Row → plain dict, JSON text → list/dict, 0/1 → bool."""
    decoded: Row = dict(row)
    for column in _JSON_COLUMNS.get(table, ()):
        raw = decoded.get(column)
        if isinstance(raw, str):
            decoded[column] = json.loads(raw)
    for column in _BOOL_COLUMNS.get(table, ()):
        if column in decoded and decoded[column] is not None:
            decoded[column] = bool(decoded[column])
    return decoded


# ─── LocalSQLiteStore ─────────────────────────────────────────────────────────


class LocalSQLiteStore:
    """Async SQLite row store.

    Default path: ~/.portal/portal.db
    Override via: PORTAL_DB_PATH environment variable (see factory.py),
    or pass db_path explicitly (used in tests).

    Usage:
        store = LocalSQLiteStore(db_path=str(tmp_path / "portal.db"))
        await store.initialize()   # raises RuntimeError on schema version mismatch
        await store.insert("api_keys", row)
        rows = await store.select("api_keys", [eq("is_active", True)], order_by="created_at")
        await store.close()
    """

    backend = "sqlite"

    def __init__(self, db_path: str = "~/.portal/portal.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._columns: dict[str, frozenset[str]] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode, create or verify the schema.

        PRAGMA user_version:
          - 0: fresh DB → create schema, set user_version=1
          - 1: compatible schema → no-op
          - other: RuntimeError (startup refused)
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            # executescript may not honour PRAGMA in all SQLite builds
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "store_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "store_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported portal database schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

        await self._load_columns()

    async def _load_columns(self) -> None:
        assert self._db is not None
        for table in ("admin_users", "api_keys", "sessions", "activity_log"):
            cursor = await self._db.execute(f"PRAGMA table_info({table});")
            info = await cursor.fetchall()
            self._columns[table] = frozenset(col["name"] for col in info)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("store_closed", db_path=self._db_path)

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
        db = self._conn()
        self._check_columns(table, columns or ())
        column_sql = ", ".join(columns) if columns else "*"
        where_sql, params = self._where(table, filters)

        sql = f"SELECT {column_sql} FROM {table}{where_sql}"
        if order_by is not None:
            self._check_columns(table, (order_by,))
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}, id ASC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(int(offset))

        cursor = await db.execute(sql, params)
        rows = await cursor.fetchall()
        return [_decode_row(table, row) for row in rows]

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        db = self._conn()
        where_sql, params = self._where(table, filters)
        cursor = await db.execute(f"SELECT COUNT(*) FROM {table}{where_sql}", params)
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def insert(self, table: str, row: Row) -> Row:
        db = self._conn()
        if not row.get("id"):
            raise ValueError(f"insert into {table} requires an 'id'")
        columns = list(row)
        self._check_columns(table, columns)
        placeholders = ", ".join("?" for _ in columns)
        values = [_encode_value(table, col, row[col]) for col in columns]

        await db.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )
        await db.commit()
        stored = await self.select(table, [Filter("id", "eq", row["id"])])
        return stored[0]

    async def update(self, table: str, values: Row, filters: Sequence[Filter]) -> list[Row]:
        db = self._conn()
        if not values:
            raise ValueError("update requires at least one column")
        self._check_columns(table, list(values))

        matched = await self.select(table, filters, columns=("id",))
        ids = [row["id"] for row in matched]
        if not ids:
            return []

        set_sql = ", ".join(f"{col} = ?" for col in values)
        id_placeholders = ", ".join("?" for _ in ids)
        params = [_encode_value(table, col, val) for col, val in values.items()]
        params.extend(ids)
        await db.execute(
            f"UPDATE {table} SET {set_sql} WHERE id IN ({id_placeholders})",
            params,
        )
        await db.commit()

        cursor = await db.execute(
            f"SELECT * FROM {table} WHERE id IN ({id_placeholders}) ORDER BY id ASC",
            ids,
        )
        return [_decode_row(table, row) for row in await cursor.fetchall()]

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        db = self._conn()
        where_sql, params = self._where(table, filters)
        cursor = await db.execute(f"DELETE FROM {table}{where_sql}", params)
        await db.commit()
        count: int = cursor.rowcount  # type: ignore[assignment]
        return count

    async def health_check(self, table: str) -> bool:
        """True if the connection is alive and ``table`` is queryable."""
        try:
            db = self._conn()
            self._check_table(table)
            await db.execute(f"SELECT id FROM {table} LIMIT 1")
            return True
        except Exception as exc:
            logger.warning(
                "store_health_check_failed",
                table=table,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized - call initialize() first")
        return self._db

    def _check_table(self, table: str) -> frozenset[str]:
        known = self._columns.get(table)
        if known is None:
            raise ValueError(f"Unknown table: {table!r}")
        return known

    def _check_columns(self, table: str, columns: Sequence[str]) -> None:
        known = self._check_table(table)
        unknown = [col for col in columns if col not in known]
        if unknown:
            raise ValueError(f"Unknown column(s) for {table}: {', '.join(unknown)}")

    def _where(self, table: str, filters: Sequence[Filter]) -> tuple[str, list[Any]]:
        """Build a parameterized WHERE clause. All filters are AND-ed."""
        self._check_columns(table, [f.column for f in filters])
        conditions: list[str] = []
        params: list[Any] = []
        for f in filters:
            if f.op == "is_null" or (f.op == "eq" and f.value is None):
                conditions.append(f"{f.column} IS NULL")
            elif f.op == "not_null" or (f.op == "neq" and f.value is None):
                conditions.append(f"{f.column} IS NOT NULL")
            else:
                conditions.append(f"{f.column} {_OPERATORS[f.op]} ?")
                params.append(_encode_value(table, f.column, f.value))
        if not conditions:
            return "", params
        return " WHERE " + " AND ".join(conditions), params

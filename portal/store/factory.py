"""Row store factory - backend selection and initialization.

Backend selection:
  1. If SUPABASE_URL and SUPABASE_KEY are both set: use SupabaseStore
  2. Otherwise: use LocalSQLiteStore (default)

LocalSQLiteStore path:
  Default: config.store.db_path (~/.portal/portal.db)
  Override: PORTAL_DB_PATH environment variable

LocalSQLiteStore.initialize() raises RuntimeError on an incompatible
PRAGMA user_version; the FastAPI lifespan lets it propagate so the process
exits non-zero.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from portal.store.protocol import RowStore
from portal.utils.logger import get_logger

if TYPE_CHECKING:
    from portal.config import Config

logger = get_logger(__name__)

_ENV_SUPABASE_URL = "SUPABASE_URL"
_ENV_SUPABASE_KEY = "SUPABASE_KEY"
_ENV_DB_PATH = "PORTAL_DB_PATH"


async def create_row_store(config: "Config") -> RowStore:
    """Create and initialize the configured RowStore backend."""
    supabase_url = os.getenv(_ENV_SUPABASE_URL)
    supabase_key = os.getenv(_ENV_SUPABASE_KEY)

    if supabase_url and supabase_key:
        return await _create_supabase_store(supabase_url, supabase_key, config)
    return await _create_local_sqlite_store(config)


async def _create_supabase_store(url: str, key: str, config: "Config") -> RowStore:
    from portal.store.supabase_backend import SupabaseStore

    store = SupabaseStore(url=url, key=key, timeout_s=config.store.timeout_s)
    await store.initialize()
    logger.info(
        "row_store_selected",
        backend="SupabaseStore",
        # host label only, never the key
        supabase_host=url.split("//")[-1].split(".")[0] if "//" in url else "unknown",
    )
    return store


async def _create_local_sqlite_store(config: "Config") -> RowStore:
    from portal.store.sqlite_backend import LocalSQLiteStore

    db_path = os.getenv(_ENV_DB_PATH, config.store.db_path)
    store = LocalSQLiteStore(db_path=db_path)
    await store.initialize()
    logger.info("row_store_selected", backend="LocalSQLiteStore", db_path=db_path)
    return store

"""Root test configuration for the portal.

Provides:
  - a fresh LocalSQLiteStore per test (tmp_path)
  - a Config with millisecond retry delays
  - a fully wired FastAPI app (services on app.state, lifespan not run)
  - an httpx AsyncClient over ASGITransport
  - helpers to create admin users, sessions and API keys

bcrypt cost is lowered to 4 for speed; tests that assert the production
cost factor set it back explicitly.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any, Optional

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from portal.activity.logger import ActivityLogger
from portal.auth.keys import create_api_key
from portal.auth.limiter import limiter
from portal.auth.models import AdminUser, ApiKeyRecord
from portal.auth.sessions import create_session
from portal.auth.users import create_admin_user
from portal.config import Config
from portal.constants import SESSION_COOKIE_NAME
from portal.main import create_app, init_app_state
from portal.store.sqlite_backend import LocalSQLiteStore

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "correct-horse-battery"


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("portal.auth.generator.BCRYPT_ROUNDS", 4)


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory slowapi storage so limits never bleed between tests."""
    limiter.reset()


@pytest.fixture
def config() -> Config:
    cfg = Config.defaults()
    cfg.store.retry_initial_delay_ms = 1
    cfg.store.retry_max_delay_ms = 5
    return cfg


@pytest.fixture
async def store(tmp_path: Path) -> AsyncIterator[LocalSQLiteStore]:
    row_store = LocalSQLiteStore(db_path=str(tmp_path / "portal.db"))
    await row_store.initialize()
    yield row_store
    await row_store.close()


@pytest.fixture
def activity(store: LocalSQLiteStore) -> ActivityLogger:
    return ActivityLogger(store)


@pytest.fixture
def app(config: Config, store: LocalSQLiteStore) -> FastAPI:
    application = create_app()
    init_app_state(application, config, store)
    application.state.ready = True
    return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await app.state.background.drain()


@pytest.fixture
async def admin(store: LocalSQLiteStore) -> AdminUser:
    return await create_admin_user(store, username=ADMIN_USERNAME, password=ADMIN_PASSWORD)


@pytest.fixture
async def admin_client(
    client: AsyncClient, store: LocalSQLiteStore, admin: AdminUser
) -> AsyncClient:
    """Client carrying a valid session cookie for ``admin``."""
    session = await create_session(store, admin.id, ttl_hours=1)
    client.cookies.set(SESSION_COOKIE_NAME, session.session_token)
    return client


KeyFactory = Callable[..., Awaitable[tuple[ApiKeyRecord, str]]]


@pytest.fixture
def make_key(store: LocalSQLiteStore) -> KeyFactory:
    """Factory fixture: ``record, full_key = await make_key(scopes=[...])``."""

    async def _make_key(
        *,
        key_name: str = "ci",
        scopes: Optional[list[str]] = None,
        environment: str = "live",
        **kwargs: Any,
    ) -> tuple[ApiKeyRecord, str]:
        record, material = await create_api_key(
            store, key_name=key_name, scopes=scopes, environment=environment, **kwargs
        )
        return record, material.full_key

    return _make_key

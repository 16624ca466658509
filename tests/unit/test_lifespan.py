"""Unit tests for portal/main.py: application factory, lifespan and global handlers.

Covers:
  - create_app() returns independent instances with ready=False
  - lifespan startup wires services, starts the deactivation scheduler and sets ready
  - lifespan shutdown stops the scheduler and closes the store
  - startup refused on an invalid config (SystemExit)
  - X-Request-ID echo/generation, HTTPException and unhandled-exception rendering
"""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient

from portal.config import Config
from portal.main import REQUEST_ID_HEADER, create_app, lifespan


@pytest.fixture
def lifespan_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Config:
    """Point the lifespan at a temporary SQLite file with a default Config."""
    config = Config.defaults()
    monkeypatch.setattr("portal.main.load_config", lambda: config)
    monkeypatch.setenv("PORTAL_DB_PATH", str(tmp_path / "lifespan.db"))
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_KEY", raising=False)
    return config


class TestCreateApp:
    def test_returns_fastapi_instance(self) -> None:
        assert isinstance(create_app(), FastAPI)

    def test_instances_are_independent(self) -> None:
        assert create_app() is not create_app()

    def test_ready_false_before_lifespan(self) -> None:
        assert create_app().state.ready is False

    def test_docs_disabled_by_default(self) -> None:
        assert create_app().docs_url is None


class TestLifespan:
    async def test_startup_and_shutdown(self, lifespan_env: Config) -> None:
        application = create_app()

        async with lifespan(application):
            state = application.state
            assert state.ready is True
            assert state.config is lifespan_env
            assert state.deactivation_scheduler.is_running
            assert await state.store.health_check("api_keys") is True
            store = state.store

        assert application.state.ready is False
        assert not application.state.deactivation_scheduler.is_running
        assert await store.health_check("api_keys") is False

    async def test_health_ready_inside_lifespan(self, lifespan_env: Config) -> None:
        application = create_app()
        async with lifespan(application):
            transport = ASGITransport(app=application)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_invalid_config_refuses_startup(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def _bad_config() -> Config:
            raise SystemExit(1)

        monkeypatch.setattr("portal.main.load_config", _bad_config)
        application = create_app()
        with pytest.raises(SystemExit):
            async with lifespan(application):
                pass
        assert application.state.ready is False


class TestGlobalHandlers:
    @pytest.fixture
    def handler_app(self) -> FastAPI:
        application = create_app()

        @application.get("/boom")
        async def boom() -> dict:
            raise RuntimeError("password=hunter2 leaked")

        @application.get("/teapot")
        async def teapot() -> dict:
            raise HTTPException(status_code=418, detail="short and stout")

        return application

    async def test_request_id_echoed(self, handler_app: FastAPI) -> None:
        transport = ASGITransport(app=handler_app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/teapot", headers={REQUEST_ID_HEADER: "req-123"})
        assert response.headers[REQUEST_ID_HEADER] == "req-123"

    async def test_request_id_generated(self, handler_app: FastAPI) -> None:
        transport = ASGITransport(app=handler_app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/teapot")
        assert len(response.headers[REQUEST_ID_HEADER]) == 26

    async def test_string_detail_wrapped(self, handler_app: FastAPI) -> None:
        transport = ASGITransport(app=handler_app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/teapot")
        assert response.status_code == 418
        assert response.json() == {"error": "short and stout"}

    async def test_unhandled_exception_is_generic_500(self, handler_app: FastAPI) -> None:
        transport = ASGITransport(app=handler_app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/boom")
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert "hunter2" not in response.text

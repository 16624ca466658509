"""Integration tests for the API key admin endpoints and /api/v1/key.

Full FastAPI stack over httpx.ASGITransport against a temporary SQLite store.
Admin routes authenticate with the session cookie (admin_client fixture);
/api/v1/key authenticates with a bearer API key.
"""

from __future__ import annotations

from httpx import ASGITransport, AsyncClient

from portal.auth.keys import get_api_key
from portal.config import Config
from portal.main import create_app, init_app_state
from portal.store import eq
from portal.store.sqlite_backend import LocalSQLiteStore

FULL_KEY_LENGTH = 72


class TestSessionRequired:
    async def test_admin_routes_reject_without_cookie(self, client: AsyncClient) -> None:
        for method, path in [
            ("GET", "/api/api-keys"),
            ("POST", "/api/api-keys"),
            ("PUT", "/api/api-keys/k1"),
            ("POST", "/api/api-keys/k1/revoke"),
            ("DELETE", "/api/api-keys/k1"),
            ("POST", "/api/api-keys/k1/rotate"),
            ("GET", "/api/api-keys/stats/rotation"),
            ("GET", "/api/activity-log"),
        ]:
            response = await client.request(method, path, json={"key_name": "x"})
            assert response.status_code == 401, (method, path)
            assert response.json()["reason"] == "missing"

    async def test_bogus_cookie(self, client: AsyncClient) -> None:
        client.cookies.set("session_token", "0" * 64)
        response = await client.get("/api/api-keys")
        assert response.status_code == 401
        assert response.json()["reason"] == "invalid"


class TestCreateAndList:
    async def test_create_shows_full_key_once(
        self, admin_client: AsyncClient, store: LocalSQLiteStore, admin
    ) -> None:
        response = await admin_client.post(
            "/api/api-keys",
            json={"key_name": "deploy", "scopes": ["sites:read"], "environment": "test"},
        )
        assert response.status_code == 201
        body = response.json()
        api_key = body["apiKey"]
        assert len(api_key["full_key"]) == FULL_KEY_LENGTH
        assert api_key["full_key"].startswith("sk_test_")
        assert api_key["scopes"] == ["sites:read"]
        assert api_key["created_by"] == admin.id
        assert "api_key" not in api_key
        assert "only time" in body["warning"]

        listing = (await admin_client.get("/api/api-keys")).json()
        assert listing["total"] == 1
        listed = listing["apiKeys"][0]
        assert "full_key" not in listed
        assert "api_key" not in listed
        assert listed["display_key"].endswith(api_key["full_key"][-4:])

        created = await store.select("activity_log", [eq("event_type", "api_key_created")])
        assert len(created) == 1

    async def test_default_scope(self, admin_client: AsyncClient) -> None:
        response = await admin_client.post("/api/api-keys", json={"key_name": "ci"})
        assert response.json()["apiKey"]["scopes"] == ["sites:write"]

    async def test_invalid_scope_is_400(self, admin_client: AsyncClient) -> None:
        response = await admin_client.post(
            "/api/api-keys", json={"key_name": "ci", "scopes": ["root"]}
        )
        assert response.status_code == 400
        assert "Invalid scope: root" in response.json()["error"]

    async def test_blank_name_is_400(self, admin_client: AsyncClient) -> None:
        response = await admin_client.post("/api/api-keys", json={"key_name": "  "})
        assert response.status_code == 400

    async def test_missing_name_is_422(self, admin_client: AsyncClient) -> None:
        response = await admin_client.post("/api/api-keys", json={})
        assert response.status_code == 422

    async def test_list_pagination(self, admin_client: AsyncClient, make_key) -> None:
        for i in range(3):
            await make_key(key_name=f"k{i}")
        body = (await admin_client.get("/api/api-keys", params={"limit": 2})).json()
        assert body["total"] == 3
        assert len(body["apiKeys"]) == 2
        assert (await admin_client.get("/api/api-keys", params={"limit": 0})).status_code == 422


class TestUpdateRevokeDelete:
    async def test_update(self, admin_client: AsyncClient, make_key) -> None:
        record, _ = await make_key()
        response = await admin_client.put(
            f"/api/api-keys/{record.id}", json={"key_name": "renamed", "notes": "hi"}
        )
        assert response.status_code == 200
        api_key = response.json()["apiKey"]
        assert api_key["key_name"] == "renamed"
        assert api_key["notes"] == "hi"
        assert api_key["scopes"] == record.scopes

    async def test_empty_update_is_400(self, admin_client: AsyncClient, make_key) -> None:
        record, _ = await make_key()
        response = await admin_client.put(f"/api/api-keys/{record.id}", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "No fields to update"}

    async def test_null_is_active_is_400(
        self, admin_client: AsyncClient, store: LocalSQLiteStore, make_key
    ) -> None:
        record, _ = await make_key()
        response = await admin_client.put(f"/api/api-keys/{record.id}", json={"is_active": None})
        assert response.status_code == 400
        assert response.json() == {"error": "is_active must be true or false"}
        assert (await get_api_key(store, record.id)).is_active is True

    async def test_update_missing_is_404(self, admin_client: AsyncClient) -> None:
        response = await admin_client.put("/api/api-keys/missing", json={"notes": "x"})
        assert response.status_code == 404

    async def test_revoke(
        self, admin_client: AsyncClient, store: LocalSQLiteStore, make_key
    ) -> None:
        record, _ = await make_key()
        response = await admin_client.post(f"/api/api-keys/{record.id}/revoke")
        assert response.status_code == 200
        assert response.json()["message"] == "API key revoked successfully"
        assert response.json()["apiKey"]["is_active"] is False
        assert (await get_api_key(store, record.id)).is_active is False

    async def test_revoke_missing_is_404(self, admin_client: AsyncClient) -> None:
        assert (await admin_client.post("/api/api-keys/missing/revoke")).status_code == 404

    async def test_delete(
        self, admin_client: AsyncClient, store: LocalSQLiteStore, make_key
    ) -> None:
        record, _ = await make_key()
        response = await admin_client.delete(f"/api/api-keys/{record.id}")
        assert response.status_code == 200
        assert response.json() == {"message": "API key deleted successfully"}
        assert await get_api_key(store, record.id) is None

        again = await admin_client.delete(f"/api/api-keys/{record.id}")
        assert again.status_code == 404
        assert again.json() == {"error": "API key not found"}


class TestRotation:
    async def test_rotate_keeps_old_key_working(
        self, admin_client: AsyncClient, client: AsyncClient, make_key
    ) -> None:
        record, old_key = await make_key(scopes=["sites:read"])
        response = await admin_client.post(
            f"/api/api-keys/{record.id}/rotate", json={"grace_period_days": 2}
        )
        assert response.status_code == 201
        body = response.json()
        new_key = body["newKey"]["full_key"]
        assert body["newKey"]["rotated_from_key_id"] == record.id
        assert body["oldKey"]["grace_period_days"] == 2

        client.cookies.clear()
        for key in (old_key, new_key):
            identity = await client.get(
                "/api/v1/key", headers={"Authorization": f"Bearer {key}"}
            )
            assert identity.status_code == 200

    async def test_rotate_without_body_uses_default(
        self, admin_client: AsyncClient, make_key
    ) -> None:
        record, _ = await make_key()
        response = await admin_client.post(f"/api/api-keys/{record.id}/rotate")
        assert response.status_code == 201
        assert response.json()["oldKey"]["grace_period_days"] == 10

    async def test_rotate_negative_grace_is_400(
        self, admin_client: AsyncClient, make_key
    ) -> None:
        record, _ = await make_key()
        response = await admin_client.post(
            f"/api/api-keys/{record.id}/rotate", json={"grace_period_days": -1}
        )
        assert response.status_code == 400

    async def test_rotate_oversized_grace_is_400(
        self, admin_client: AsyncClient, store: LocalSQLiteStore, make_key
    ) -> None:
        record, _ = await make_key()
        response = await admin_client.post(
            f"/api/api-keys/{record.id}/rotate", json={"grace_period_days": 10**7}
        )
        assert response.status_code == 400
        assert await store.count("api_keys") == 1
        assert (await get_api_key(store, record.id)).grace_period_expires_at is None

    async def test_rotate_missing_is_404(self, admin_client: AsyncClient) -> None:
        assert (await admin_client.post("/api/api-keys/missing/rotate")).status_code == 404

    async def test_rotation_stats(self, admin_client: AsyncClient, make_key) -> None:
        record, _ = await make_key()
        await make_key()
        await admin_client.post(f"/api/api-keys/{record.id}/rotate")
        body = (await admin_client.get("/api/api-keys/stats/rotation")).json()
        assert body["stats"] == {
            "totalKeys": 3,
            "activeKeys": 3,
            "inactiveKeys": 0,
            "keysInGracePeriod": 1,
            "rotatedKeys": 1,
        }
        assert body["timestamp"]


class TestBearerEndpoint:
    async def test_identity(self, client: AsyncClient, make_key) -> None:
        record, full_key = await make_key(key_name="reader", scopes=["sites:read"])
        response = await client.get(
            "/api/v1/key", headers={"Authorization": f"Bearer {full_key}"}
        )
        assert response.status_code == 200
        assert response.json() == {
            "apiKey": {"id": record.id, "key_name": "reader", "scopes": ["sites:read"]}
        }
        assert response.headers["X-Request-ID"]

    async def test_missing_scope_is_403(self, client: AsyncClient, make_key) -> None:
        _, full_key = await make_key(scopes=["sites:write"])
        response = await client.get(
            "/api/v1/key", headers={"Authorization": f"Bearer {full_key}"}
        )
        assert response.status_code == 403
        assert response.json()["reason"] == "insufficient-scope"

    async def test_missing_header_is_401(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/key")
        assert response.status_code == 401
        body = response.json()
        assert body["reason"] == "missing-header"
        assert body["error"] == "Authentication required"

    async def test_invalid_format_is_401(self, client: AsyncClient) -> None:
        response = await client.get(
            "/api/v1/key", headers={"Authorization": "Bearer sk_live_nothex"}
        )
        assert response.status_code == 401
        assert response.json()["reason"] == "invalid-format"

    async def test_usage_recorded(
        self, client: AsyncClient, app, store: LocalSQLiteStore, make_key
    ) -> None:
        record, full_key = await make_key(scopes=["sites:read"])
        await client.get("/api/v1/key", headers={"Authorization": f"Bearer {full_key}"})
        await app.state.background.drain()
        assert (await get_api_key(store, record.id)).usage_count == 1
        usage = await store.select("activity_log", [eq("event_type", "api_key_usage")])
        assert usage[0]["metadata"]["endpoint"] == "/api/v1/key"


async def test_per_key_quota_returns_429(
    config: Config, store: LocalSQLiteStore, make_key
) -> None:
    config.api_keys.rate_limit_max_requests = 2
    app = create_app()
    init_app_state(app, config, store)
    app.state.ready = True
    _, full_key = await make_key(scopes=["sites:read"])
    headers = {"Authorization": f"Bearer {full_key}"}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        for _ in range(2):
            assert (await client.get("/api/v1/key", headers=headers)).status_code == 200
            await app.state.background.drain()

        response = await client.get("/api/v1/key", headers=headers)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "3600"
    body = response.json()
    assert body["reason"] == "rate-limited"
    assert body["retryAfter"] == 3600
    violations = await store.select("activity_log", [eq("event_type", "rate_limit_violation")])
    assert len(violations) == 1

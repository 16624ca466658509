"""Health endpoint for the portal.

Implements:
  GET /api/health - probes every table the portal depends on

Returns 503 before ``app.state.ready`` is set (lifespan still starting) and
whenever any table probe fails; 200 once every probe succeeds.

Polled by container health checks and the admin UI status indicator.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from portal.store.protocol import RowStore
from portal.utils.timestamps import utc_now_iso

router = APIRouter(tags=["health"])

HEALTH_TABLES: tuple[str, ...] = ("admin_users", "api_keys", "sessions", "activity_log")


@router.get("/api/health")
async def health(request: Request) -> JSONResponse:
    """Response body:
        {
          "status": "healthy" | "unhealthy" | "starting",
          "store": "sqlite" | "supabase",
          "tables": {"api_keys": "ok" | "error", ...},
          "timestamp": "..."
        }
    """
    if not getattr(request.app.state, "ready", False):
        return JSONResponse(
            status_code=503,
            content={"status": "starting", "message": "Portal is starting up"},
        )

    store: RowStore = request.app.state.store
    tables: dict[str, str] = {}
    for table in HEALTH_TABLES:
        tables[table] = "ok" if await store.health_check(table) else "error"

    healthy = all(state == "ok" for state in tables.values())
    body: dict[str, Any] = {
        "status": "healthy" if healthy else "unhealthy",
        "store": store.backend,
        "tables": tables,
        "timestamp": utc_now_iso(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)

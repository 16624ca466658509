"""Admin endpoints for API key management, plus the key-authenticated identity route.

Provides (session cookie required):
  GET    /api/api-keys                  - page of keys, metadata + display_key only
  POST   /api/api-keys                  - create a key (full key shown once)
  PUT    /api/api-keys/{key_id}         - update name/scopes/notes/is_active/expires_at
  POST   /api/api-keys/{key_id}/revoke  - soft-deactivate
  DELETE /api/api-keys/{key_id}         - administrative hard delete
  POST   /api/api-keys/{key_id}/rotate  - rotate with grace period (new key shown once)
  GET    /api/api-keys/stats/rotation   - aggregate rotation counts

Provides (bearer API key, scope ``sites:read``):
  GET    /api/v1/key                    - identity of the presenting key

The bcrypt hash is never serialized: responses are built from
ApiKeyRecord.to_public_dict().
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from portal.activity.logger import ActivityLogger
from portal.auth.context import ApiKeyContext, SessionContext
from portal.auth.keys import (
    InvalidKeyError,
    KeyValidationError,
    create_api_key,
    delete_api_key,
    list_api_keys,
    revoke_api_key,
    update_api_key,
)
from portal.auth.middleware import require_scope
from portal.auth.rotation import KeyRotationManager
from portal.auth.sessions import require_session
from portal.constants import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, SCOPE_SITES_READ
from portal.utils.logger import get_logger
from portal.utils.timestamps import utc_now_iso

logger = get_logger(__name__)

router = APIRouter(prefix="/api/api-keys", tags=["api-keys"])
v1_router = APIRouter(prefix="/api/v1", tags=["v1"])

_SHOW_ONCE_WARNING = (
    "This is the only time the full API key will be displayed. Please save it securely."
)


# ─── Request Models ───────────────────────────────────────────────────────────


class CreateKeyRequest(BaseModel):
    """Request body for POST /api/api-keys.

    created_by is taken from the session, never from the body.
    """

    key_name: str
    scopes: Optional[list[str]] = None
    notes: Optional[str] = None
    expires_at: Optional[datetime] = None
    environment: Literal["live", "test"] = "live"


class UpdateKeyRequest(BaseModel):
    """Request body for PUT /api/api-keys/{key_id}. Only fields sent are applied."""

    key_name: Optional[str] = None
    scopes: Optional[list[str]] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


class RotateKeyRequest(BaseModel):
    grace_period_days: Optional[int] = None


def _activity(request: Request) -> ActivityLogger:
    return request.app.state.activity


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.get("")
async def get_keys(
    request: Request,
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
    session: SessionContext = Depends(require_session),
) -> dict:
    records, total = await list_api_keys(request.app.state.store, limit=limit, offset=offset)
    return {"apiKeys": [record.to_public_dict() for record in records], "total": total}


@router.post("", status_code=201)
async def create_key(
    body: CreateKeyRequest,
    request: Request,
    session: SessionContext = Depends(require_session),
) -> dict:
    """Create a key. The response is the only place the full key ever appears."""
    try:
        record, material = await create_api_key(
            request.app.state.store,
            key_name=body.key_name,
            scopes=body.scopes,
            notes=body.notes,
            expires_at=body.expires_at,
            environment=body.environment,
            created_by=session.user_id,
        )
    except KeyValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc

    await _activity(request).log_api_key_created(
        session.user_id, record.id, record.key_name, record.scopes
    )

    api_key = record.to_public_dict()
    api_key["full_key"] = material.full_key
    return {"apiKey": api_key, "warning": _SHOW_ONCE_WARNING}


@router.get("/stats/rotation")
async def rotation_stats(
    request: Request,
    session: SessionContext = Depends(require_session),
) -> dict:
    manager: KeyRotationManager = request.app.state.rotation_manager
    stats = await manager.stats()
    return {"stats": stats.to_dict(), "timestamp": utc_now_iso()}


@router.put("/{key_id}")
async def update_key(
    key_id: str,
    body: UpdateKeyRequest,
    request: Request,
    session: SessionContext = Depends(require_session),
) -> dict:
    try:
        record = await update_api_key(
            request.app.state.store, key_id, body.model_dump(exclude_unset=True)
        )
    except KeyValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except InvalidKeyError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    return {"apiKey": record.to_public_dict()}


@router.post("/{key_id}/revoke")
async def revoke_key(
    key_id: str,
    request: Request,
    session: SessionContext = Depends(require_session),
) -> dict:
    try:
        record = await revoke_api_key(request.app.state.store, key_id)
    except InvalidKeyError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc

    await _activity(request).log_api_key_revoked(session.user_id, key_id)
    return {"message": "API key revoked successfully", "apiKey": record.to_public_dict()}


@router.delete("/{key_id}")
async def delete_key(
    key_id: str,
    request: Request,
    session: SessionContext = Depends(require_session),
) -> dict:
    if not await delete_api_key(request.app.state.store, key_id):
        raise HTTPException(status_code=404, detail="API key not found")

    await _activity(request).log_api_key_deleted(session.user_id, key_id)
    return {"message": "API key deleted successfully"}


@router.post("/{key_id}/rotate", status_code=201)
async def rotate_key(
    key_id: str,
    request: Request,
    body: Optional[RotateKeyRequest] = None,
    session: SessionContext = Depends(require_session),
) -> dict:
    """Rotate a key. The old key keeps working until its grace period lapses."""
    manager: KeyRotationManager = request.app.state.rotation_manager
    try:
        result = await manager.rotate(
            key_id,
            session.user_id,
            grace_period_days=body.grace_period_days if body else None,
        )
    except InvalidKeyError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except KeyValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    return result.to_response()


# ─── Key-authenticated ────────────────────────────────────────────────────────


@v1_router.get("/key")
async def current_key(
    context: ApiKeyContext = Depends(require_scope(SCOPE_SITES_READ)),
) -> dict:
    """Identity of the API key presented in the Authorization header."""
    return {
        "apiKey": {
            "id": context.id,
            "key_name": context.key_name,
            "scopes": list(context.scopes),
        }
    }

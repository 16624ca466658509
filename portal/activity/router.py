"""GET /api/activity-log - newest-first page of activity entries (session required)."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from portal.activity.logger import ActivityLogger
from portal.auth.context import SessionContext
from portal.auth.sessions import require_session
from portal.constants import MAX_PAGE_LIMIT

router = APIRouter(prefix="/api/activity-log", tags=["activity"])

ACTIVITY_PAGE_LIMIT = 20


@router.get("")
async def get_activity(
    request: Request,
    limit: int = Query(ACTIVITY_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
    event_type: Optional[str] = None,
    session: SessionContext = Depends(require_session),
) -> dict:
    activity: ActivityLogger = request.app.state.activity
    entries, total = await activity.list_activity(limit, offset, event_type=event_type)
    return {"activities": [entry.to_dict() for entry in entries], "total": total}

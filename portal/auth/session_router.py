"""Admin login/session endpoints.

Provides:
  GET  /api/auth/setup    - whether the first admin user still has to be created
  POST /api/auth/setup    - create the first admin user (refused once any exist)
  POST /api/auth/login    - username/password → ``session_token`` cookie
  POST /api/auth/logout   - delete the session and clear the cookie
  GET  /api/auth/session  - the admin user behind the current cookie

Login is limited per client address (login_rate_limit, 5 per 10 minutes by
default) on top of the general limit.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel

from portal.activity.logger import ActivityLogger
from portal.auth.context import RequestInfo, SessionContext
from portal.auth.limiter import limiter, login_rate_limit
from portal.auth.sessions import SessionAuthError, create_session, delete_session, require_session
from portal.auth.users import (
    AdminUserError,
    authenticate_admin,
    count_admin_users,
    create_admin_user,
    get_admin_user,
)
from portal.config import Config
from portal.constants import SESSION_COOKIE_NAME
from portal.utils.logger import get_logger
from portal.utils.sanitizer import sanitize_token
from portal.utils.timestamps import to_iso

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class SetupRequest(BaseModel):
    username: str
    password: str
    email: Optional[str] = None


class LoginRequest(BaseModel):
    username: str
    password: str


def _activity(request: Request) -> ActivityLogger:
    return request.app.state.activity


@router.get("/setup")
async def setup_status(request: Request) -> dict:
    return {"needsSetup": await count_admin_users(request.app.state.store) == 0}


@router.post("/setup", status_code=201)
async def setup(body: SetupRequest, request: Request) -> dict:
    """Create the first admin user. Only allowed while admin_users is empty."""
    store = request.app.state.store
    if await count_admin_users(store) > 0:
        raise HTTPException(status_code=403, detail="Setup has already been completed")
    try:
        user = await create_admin_user(
            store, username=body.username, password=body.password, email=body.email
        )
    except AdminUserError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    logger.info("initial_admin_created", user_id=user.id)
    return {"message": "Admin user created", "user": user.to_public_dict()}


@router.post("/login")
@limiter.limit(login_rate_limit)
async def login(body: LoginRequest, request: Request, response: Response) -> dict:
    info = RequestInfo.from_request(request)
    store = request.app.state.store
    config: Config = request.app.state.config

    user, reason = await authenticate_admin(store, body.username, body.password)
    if user is None:
        await _activity(request).log_failed_login(info, body.username, reason)
        logger.warning("login_failed", username=body.username, ip_address=info.ip_address)
        raise HTTPException(status_code=401, detail="Invalid username or password")

    session = await create_session(store, user.id, config.sessions.ttl_hours)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session.session_token,
        max_age=config.sessions.ttl_hours * 3600,
        httponly=True,
        secure=config.sessions.cookie_secure,
        samesite="strict",
    )
    await _activity(request).log_successful_login(info, user.id, user.username)
    return {"user": user.to_public_dict(), "expiresAt": to_iso(session.expires_at)}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    session: SessionContext = Depends(require_session),
) -> dict:
    token = request.cookies.get(SESSION_COOKIE_NAME, "")
    await delete_session(request.app.state.store, token)
    response.delete_cookie(SESSION_COOKIE_NAME)
    await _activity(request).log_logout(RequestInfo.from_request(request), session.user_id)
    logger.info("logout", user_id=session.user_id, token=sanitize_token(token))
    return {"message": "Logged out successfully"}


@router.get("/session")
async def current_session(
    request: Request,
    session: SessionContext = Depends(require_session),
) -> dict:
    user = await get_admin_user(request.app.state.store, session.user_id)
    if user is None:
        raise SessionAuthError("invalid", "Invalid or expired session", "User no longer exists")
    return {"user": user.to_public_dict()}

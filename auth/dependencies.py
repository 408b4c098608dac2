"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Three credentials are checked in priority order:
  1. Session JWT cookie ("session_token") -- set by every sign-in flow.
  2. Authorization: Bearer <session JWT> -- API clients holding a session.
  3. Authorization: Bearer <API token> -- the long-lived "Default" token
     every user gets at creation, for scripts.

All three converge on a stored User. The JWT only proves who the caller was
when it was issued: the user row is re-read on every request, so a deleted
user is unauthenticated even with an unexpired cookie.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.tokens import SESSION_COOKIE, decode_session_token


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    store = request.app.state.store
    secret = request.app.state.settings.secret_key

    # 1. Cookie (web UI)
    cookie_token = request.cookies.get(SESSION_COOKIE)
    if cookie_token:
        payload = decode_session_token(cookie_token, secret)
        if payload:
            user = store.get_user(payload["sub"])
            if user is not None:
                return user

    # 2./3. Authorization: Bearer header -- session JWT first, then API token
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    bearer = auth_header[7:].strip()
    if not bearer:
        return None

    payload = decode_session_token(bearer, secret)
    if payload:
        user = store.get_user(payload["sub"])
        if user is not None:
            return user

    return store.get_user_by_api_token(bearer)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.patch("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user

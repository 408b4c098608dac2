"""
api/routes/users.py -- Profile update endpoint.

Routes:
  PATCH /api/users/{user_id}   -- merge a partial profile into the caller's user
  *     /api/users/{user_id}   -- 405 once the caller is authenticated

Auth policy: requires auth (get_current_user), so an anonymous caller gets 401
before the method is considered. Every other method is routed to a handler that
authenticates first and then answers 405.

IDOR guard: the path id must be the caller's own id (403 otherwise). A user can
only ever edit their own profile here.

Response shape {"typebots": <user>} is what the web client already parses.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import UserUpdate
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import AuthAdapter
from core.telemetry import TelemetryEvent, track_events

logger = logging.getLogger("builder.api.users")

router = APIRouter()

# Null means "leave unchanged" for these; every other field is written as sent.
_KEEP_WHEN_NULL = ("onboarding_categories", "displayed_in_app_notifications", "group_titles_auto_generation")


def _is_profile_change(fields: dict[str, Any]) -> bool:
    """True when the update touches what onboarding collects.

    An explicitly sent onboarding_categories list counts even when empty.
    """
    if fields.get("onboarding_categories") is not None:
        return True
    return any(fields.get(key) for key in ("referral", "company", "name"))


@router.patch("/users/{user_id}")
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Update the caller's profile and return the stored record."""
    if user_id != current_user.id:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You can only update your own profile."},
        )

    fields = body.model_dump(exclude_unset=True)
    for key in _KEEP_WHEN_NULL:
        if key in fields and fields[key] is None:
            del fields[key]

    store: AuthAdapter = request.app.state.store
    updated = store.update_user(user_id, **fields)
    if updated is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )

    if _is_profile_change(fields):
        track_events(
            [TelemetryEvent(name="User updated", user_id=current_user.id)],
            url=request.app.state.settings.telemetry_url,
        )
    logger.info("User %s updated fields %s", user_id, sorted(fields))
    return JSONResponse({"typebots": updated.to_dict()})


@router.api_route("/users/{user_id}", methods=["GET", "POST", "PUT", "DELETE"], include_in_schema=False)
def user_method_not_allowed(user_id: str, current_user: User = Depends(get_current_user)) -> JSONResponse:
    raise HTTPException(
        status_code=405,
        detail={"code": "method_not_allowed", "message": "Method not allowed."},
    )

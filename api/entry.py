"""
api/entry.py -- Pre-routing handler for /api/auth/*.

Pattern: Interceptor. AuthEntryHandler is installed with
app.middleware("http") and sees every request before the auth router:

  1. HEAD /api/auth/*                 -> 200, empty body. Enterprise mail
                                         scanners open sign-in links with HEAD;
                                         answering here keeps them from
                                         consuming the one-time token.
  2. GET /api/auth/session, test mode -> {"user": MOCKED_USER}
  3. POST /api/auth/signin/email      -> one limiter hit per request; over the
                                         limit sets request.state.restricted.

Everything else passes through unchanged. The handler never rejects a request
itself: the rate-limit outcome travels as a tag so the sign-in gate reports it
through the normal error redirect.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter

from api.limiter import client_ip, is_rate_limited
from auth.signin import RATE_LIMITED

logger = logging.getLogger("builder.api.entry")

AUTH_PREFIX = "/api/auth"

MOCKED_USER = {
    "id": "userId",
    "name": "John Doe",
    "email": "user@email.com",
    "email_verified": None,
    "image": "https://avatars.githubusercontent.com/u/16015833?v=4",
    "company": None,
    "created_at": "2022-07-01T00:00:00+00:00",
    "last_activity_at": "2022-07-01T00:00:00+00:00",
    "onboarding_categories": [],
    "preferred_app_appearance": None,
    "displayed_in_app_notifications": None,
    "group_titles_auto_generation": None,
    "referral": None,
    "preferred_language": None,
    "updated_at": "2022-07-01T00:00:00+00:00",
}


class AuthEntryHandler:
    """Callable HTTP middleware; construct once per app."""

    def __init__(self, test_mode: bool = False, limiter: Limiter | None = None, rate: str = "1/minute") -> None:
        self.test_mode = test_mode
        self.limiter = limiter
        self.rate = rate

    async def __call__(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not path.startswith(AUTH_PREFIX):
            return await call_next(request)

        if request.method == "HEAD":
            return Response(status_code=200)

        if self.test_mode and request.method == "GET" and path == f"{AUTH_PREFIX}/session":
            return JSONResponse({"user": MOCKED_USER})

        if self.limiter is not None and request.method == "POST" and path.startswith(f"{AUTH_PREFIX}/signin/email"):
            ip = client_ip(request)
            if is_rate_limited(self.limiter, ip, self.rate):
                logger.info("Email sign-in rate limited for %s", ip)
                request.state.restricted = RATE_LIMITED

        return await call_next(request)

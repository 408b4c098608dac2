"""
api/limiter.py -- Email sign-in rate limiter.

One slowapi Limiter per app, built from settings in create_app() and handed to
the AuthEntryHandler. It is not mounted as SlowAPIMiddleware and no
route carries @limiter.limit(): the only throttled operation is
POST /api/auth/signin/email, and exceeding the limit must not produce a 429.
The entry handler calls is_rate_limited() and tags the request instead, and
the sign-in gate turns the tag into a "rate-limited" redirect.

The counter lives in the configured storage (redis:// in production, so
every worker shares it; memory:// in tests). The moving-window strategy hits
and checks in one storage operation, so two concurrent requests from the
same IP cannot both pass a 1/minute limit.
"""

from __future__ import annotations

from limits import parse
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from core.config import Settings

EMAIL_SIGNIN_SCOPE = "email-signin"


def client_ip(request: Request) -> str:
    """Client address: first X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    return get_remote_address(request)


def build_email_signin_limiter(settings: Settings) -> Limiter | None:
    """Return a Limiter on RATE_LIMIT_STORAGE_URL, or None when rate limiting is off."""
    if not settings.rate_limit_storage_url:
        return None
    return Limiter(
        key_func=client_ip,
        storage_uri=settings.rate_limit_storage_url,
        strategy="moving-window",
    )


def is_rate_limited(limiter: Limiter, ip: str, rate: str) -> bool:
    """Record one attempt for ip and report whether it exceeded rate (e.g. "1/minute")."""
    return not limiter.limiter.hit(parse(rate), EMAIL_SIGNIN_SCOPE, ip)

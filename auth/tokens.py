"""
auth/tokens.py -- Session JWTs, identifiers, API tokens and sign-in codes.

Security design decisions:
  Session JWT: python-jose with HS256, signed with SECRET_KEY. Carries the user
       id as `sub` plus display claims (email, name, picture) and expiry.
       Verification returns None on any failure -- route layer turns that
       into 401 or an empty session.

  Sign-in codes: 6-digit numeric codes from `secrets`, valid for 5 minutes.
       Only HMAC-SHA256(SECRET_KEY, code) is stored, so a leaked
       verification_tokens table cannot be replayed without the key.

  API tokens: 24 random alphanumeric characters from `secrets`. Stored as-is
       because the owner must be able to read the default token back.

The secret is always passed in by the caller (from Settings) instead of read
at module load, so tests and the app factory can run with their own keys.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

if TYPE_CHECKING:
    from auth.models import User

_ALGORITHM = "HS256"

SESSION_COOKIE = "session_token"
VERIFICATION_CODE_MAX_AGE = timedelta(minutes=5)

_ID_ALPHABET = string.ascii_lowercase + string.digits
_TOKEN_ALPHABET = string.ascii_letters + string.digits


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def generate_id(length: int = 25) -> str:
    """Return a collision-resistant id: a lowercase letter then random base-36."""
    head = secrets.choice(string.ascii_lowercase)
    return head + "".join(secrets.choice(_ID_ALPHABET) for _ in range(length - 1))


def generate_api_token(length: int = 24) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


# ---------------------------------------------------------------------------
# Email sign-in codes
# ---------------------------------------------------------------------------


def generate_verification_code() -> str:
    """Return a random 6-digit code (100000-999999)."""
    return str(100000 + secrets.randbelow(900000))


def hash_verification_token(code: str, secret: str) -> str:
    return hmac.new(secret.encode(), code.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_session_token(user: User, secret: str, max_age_seconds: int) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=max_age_seconds)
    payload = {
        "sub": user.id,
        "email": user.email,
        "name": user.name,
        "picture": user.image,
        "exp": expire,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def decode_session_token(token: str, secret: str) -> dict | None:
    """Decode and verify a session JWT. Returns the claims or None on any failure."""
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, max_age_seconds: int, secure: bool) -> None:
    """Write the session JWT as an httpOnly, samesite=lax cookie.

    max_age matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age_seconds,
    )

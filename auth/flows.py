"""
auth/flows.py -- The three ways a user signs in.

  OAuth        sign_in_with_oauth()        after the provider callback
  Email link   request_email_sign_in()     POST /api/auth/signin/email
               complete_email_sign_in()    GET  /api/auth/callback/email
  Credentials  authorize_credentials()     POST /api/auth/callback/credentials

Each flow runs the SignInGate before a session is issued and returns a
SignInResult; the route turns it into a cookie and a redirect. Refusals are
AuthError subclasses. A gate denial becomes AccessDeniedError, so the client
never learns which rule refused it.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode

import requests
from sqlalchemy.exc import IntegrityError

from auth.email import send_verification_request
from auth.errors import AccessDeniedError, AccountNotLinkedError, EmailSignInError, VerificationError
from auth.models import Account, User, VerificationToken
from auth.signin import SignInAttempt, SignInGate
from auth.store import AuthAdapter
from auth.tokens import VERIFICATION_CODE_MAX_AGE, generate_verification_code, hash_verification_token
from core.config import Settings
from core.fetcher import fetch_client_user

logger = logging.getLogger("builder.auth.flows")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass
class SignInResult:
    user: User
    is_new_user: bool


def _authorize_or_deny(gate: SignInGate, attempt: SignInAttempt) -> None:
    if not gate.authorize(attempt):
        raise AccessDeniedError()


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def sign_in_with_oauth(
    store: AuthAdapter,
    gate: SignInGate,
    profile: dict[str, Any],
    account: dict[str, Any],
    restricted: str | None = None,
) -> SignInResult:
    """Resolve a provider callback to a stored user.

    A known (provider, provider_account_id) pair signs its owner in. An email
    that already belongs to another user is never linked automatically.
    """
    existing = store.get_user_by_account(account["provider"], account["provider_account_id"])
    if existing is not None:
        _authorize_or_deny(gate, SignInAttempt(user=existing.to_dict(), account=account, restricted=restricted))
        return SignInResult(user=existing, is_new_user=False)

    email = profile.get("email")
    if email and store.get_user_by_email(email) is not None:
        logger.info("OAuth sign-in refused: %s already used by another account", email)
        raise AccountNotLinkedError()

    candidate = {"id": profile["id"], "email": email, "name": profile.get("name"), "image": profile.get("image")}
    _authorize_or_deny(gate, SignInAttempt(user=candidate, account=account, restricted=restricted))

    user = store.create_user({"email": email, "name": profile.get("name"), "image": profile.get("image")})
    try:
        store.link_account(Account(user_id=user.id, **account))
    except IntegrityError as exc:
        # Another request linked this identity first; drop the user we just made.
        logger.warning("Account link for %s failed, removing user %s: %s", account["provider"], user.id, exc)
        store.delete_user(user.id)
        raise AccountNotLinkedError() from exc
    return SignInResult(user=user, is_new_user=True)


# ---------------------------------------------------------------------------
# Email link
# ---------------------------------------------------------------------------


def _email_account(email: str) -> dict[str, Any]:
    return {"type": "email", "provider": "email", "provider_account_id": email}


def _email_attempt(store: AuthAdapter, email: str, restricted: str | None) -> tuple[User | None, SignInAttempt]:
    user = store.get_user_by_email(email)
    candidate = user.to_dict() if user is not None else {"id": email, "email": email}
    return user, SignInAttempt(user=candidate, account=_email_account(email), restricted=restricted)


def request_email_sign_in(
    store: AuthAdapter,
    gate: SignInGate,
    settings: Settings,
    email: str,
    restricted: str | None = None,
) -> None:
    """Gate the address, store a hashed one-time code and mail the link.

    Raises RateLimitedError when the entry handler tagged the request,
    EmailSignInError when the mail could not be sent.
    """
    email = email.strip().lower()
    _, attempt = _email_attempt(store, email, restricted)
    _authorize_or_deny(gate, attempt)

    code = generate_verification_code()
    expires = datetime.now(timezone.utc) + VERIFICATION_CODE_MAX_AGE
    store.create_verification_token(
        VerificationToken(
            identifier=email,
            token=hash_verification_token(code, settings.secret_key),
            expires=expires.isoformat(),
        )
    )
    url = f"{settings.base_url.rstrip('/')}/api/auth/callback/email?" + urlencode({"email": email, "token": code})
    if not send_verification_request(settings, email, url, code):
        raise EmailSignInError()
    logger.info("Email sign-in requested for %s", email)


def complete_email_sign_in(
    store: AuthAdapter,
    gate: SignInGate,
    settings: Settings,
    email: str,
    code: str,
) -> SignInResult:
    """Consume the one-time code and sign the address in.

    Raises VerificationError for an unknown, already used or expired code.
    """
    email = email.strip().lower()
    token = store.use_verification_token(email, hash_verification_token(code, settings.secret_key))
    now = datetime.now(timezone.utc)
    if token is None or datetime.fromisoformat(token.expires) <= now:
        raise VerificationError()

    user, attempt = _email_attempt(store, email, None)
    _authorize_or_deny(gate, attempt)

    if user is not None:
        if not user.email_verified:
            user = store.update_user(user.id, email_verified=now.isoformat()) or user
        return SignInResult(user=user, is_new_user=False)

    user = store.create_user({"email": email, "email_verified": now.isoformat()})
    return SignInResult(user=user, is_new_user=True)


# ---------------------------------------------------------------------------
# Credentials exchange
# ---------------------------------------------------------------------------


def _normalize_remote_user(payload: dict[str, Any]) -> dict[str, Any]:
    """camelCase keys from the credential host -> snake_case user fields."""
    return {_CAMEL_BOUNDARY.sub("_", key).lower(): value for key, value in payload.items()}


def authorize_credentials(
    store: AuthAdapter,
    gate: SignInGate,
    settings: Settings,
    auth_token: str | None,
    api_host: str | None,
    tenant_id: str | None,
) -> SignInResult | None:
    """Exchange a shared code for the user the credential host vouches for.

    Returns None when the code does not match TYPEBOT_CODE or the host
    cannot be reached; the route answers CredentialsSignin. A user the host
    knows but this store does not is created with the host's id.
    """
    if not settings.typebot_code or auth_token != settings.typebot_code:
        return None
    if not api_host:
        return None

    try:
        remote = _normalize_remote_user(fetch_client_user(api_host, tenant_id))
    except (requests.RequestException, ValueError) as e:
        logger.error("Credential host request failed: %s", e)
        return None

    user = store.get_user(remote["id"]) if remote.get("id") else None
    is_new_user = user is None
    if user is None:
        user = store.create_user(remote)

    account = {"type": "credentials", "provider": "credentials", "provider_account_id": user.id}
    _authorize_or_deny(gate, SignInAttempt(user=user.to_dict(), account=account))
    return SignInResult(user=user, is_new_user=is_new_user)

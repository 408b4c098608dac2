"""
api/routes/auth.py -- Sign-in, sign-out and session endpoints.

Routes (mounted under /api/auth, behind AuthEntryHandler):
  GET  /api/auth/providers             -- enabled providers (public)
  GET  /api/auth/session               -- {"user": ...} or {} (public)
  POST /api/auth/signout               -- clears the session cookie
  POST /api/auth/signin/email          -- mails a one-time sign-in link
  GET  /api/auth/callback/email        -- consumes the link, signs in
  POST /api/auth/callback/credentials  -- credential exchange with the client host
  GET  /api/auth/signin/{provider}     -- redirect to the OAuth provider
  GET  /api/auth/callback/{provider}   -- OAuth callback, signs in

Every sign-in ends the same way: session JWT cookie plus a 302 to /onboarding
(new user, onboarding configured) or /. Every refusal is an AuthError; the app
handler turns it into a 302 to /signin?error=<code>.

Route registration order: the literal /signin/email, /callback/email and
/callback/credentials paths are declared before the /{provider} catch-alls so
FastAPI does not route "email" into the OAuth handlers.

Security:
  Cache-Control: no-store on every response that sets or clears the cookie.
  The provider path segment is checked against the enabled registry before any
  redirect, so a spoofed provider name cannot pick the redirect target.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.models import CredentialsRequest, EmailSignInRequest, ProviderInfo
from auth.dependencies import try_get_current_user
from auth.errors import CredentialsSignInError, OAuthCallbackError
from auth.flows import (
    SignInResult,
    authorize_credentials,
    complete_email_sign_in,
    request_email_sign_in,
    sign_in_with_oauth,
)
from auth.oauth import Provider, build_account, fetch_oauth_profile
from auth.tokens import SESSION_COOKIE, create_session_token, set_session_cookie
from core.telemetry import TelemetryEvent, track_events

logger = logging.getLogger("builder.api.auth")

# Auth policy: every route here is public. The session cookie is the output,
# not a prerequisite; /signout only reads it to attribute the event.
router = APIRouter()

VERIFY_REQUEST_PAGE = "/signin/verify-request"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _signed_in_response(request: Request, result: SignInResult) -> RedirectResponse:
    settings = request.app.state.settings
    target = "/onboarding" if result.is_new_user and settings.onboarding_typebot_id else "/"
    token = create_session_token(result.user, settings.secret_key, settings.session_max_age_seconds)
    resp = RedirectResponse(target, status_code=302)
    set_session_cookie(resp, token, settings.session_max_age_seconds, settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    logger.info("User %s signed in (new=%s)", result.user.id, result.is_new_user)
    return resp


def _oauth_provider(request: Request, provider_id: str) -> Provider:
    for provider in request.app.state.providers:
        if provider.id == provider_id and provider.type == "oauth":
            return provider
    raise OAuthCallbackError(f"Unknown provider {provider_id!r}")


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.get("/providers", response_model=dict[str, ProviderInfo])
async def list_providers(request: Request) -> dict[str, ProviderInfo]:
    """Return the enabled providers keyed by id.

    Public endpoint -- the sign-in page calls this to decide which buttons to
    render. The credentials provider is always present.
    """
    base = request.app.state.settings.base_url.rstrip("/")
    return {
        p.id: ProviderInfo(
            id=p.id,
            name=p.name,
            type=p.type,
            signin_url=f"{base}/api/auth/signin/{p.id}",
            callback_url=f"{base}/api/auth/callback/{p.id}",
        )
        for p in request.app.state.providers
    }


@router.get("/session")
def get_session(request: Request) -> JSONResponse:
    """Return the signed-in user, or an empty object when there is none."""
    user = try_get_current_user(request)
    if user is None:
        return JSONResponse({})
    return JSONResponse({"user": user.to_dict()})


@router.post("/signout")
def sign_out(request: Request) -> JSONResponse:
    """Clear the session cookie; emit "User logged out" when a user was signed in."""
    settings = request.app.state.settings
    user = try_get_current_user(request)
    if user is not None:
        track_events([TelemetryEvent(name="User logged out", user_id=user.id)], url=settings.telemetry_url)
    resp = JSONResponse({"url": settings.base_url})
    resp.delete_cookie(SESSION_COOKIE)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Email link
# ---------------------------------------------------------------------------


@router.post("/signin/email")
def sign_in_email(request: Request, body: EmailSignInRequest) -> RedirectResponse:
    """Send a one-time sign-in link. The entry handler may have tagged the request as rate limited."""
    state = request.app.state
    request_email_sign_in(
        state.store,
        state.gate,
        state.settings,
        body.email,
        restricted=getattr(request.state, "restricted", None),
    )
    return RedirectResponse(VERIFY_REQUEST_PAGE, status_code=302)


@router.get("/callback/email")
def callback_email(request: Request, email: str, token: str) -> RedirectResponse:
    state = request.app.state
    result = complete_email_sign_in(state.store, state.gate, state.settings, email, token)
    return _signed_in_response(request, result)


# ---------------------------------------------------------------------------
# Credentials exchange
# ---------------------------------------------------------------------------


@router.post("/callback/credentials")
def callback_credentials(request: Request, body: CredentialsRequest) -> RedirectResponse:
    state = request.app.state
    result = authorize_credentials(
        state.store, state.gate, state.settings, body.auth_token, body.api_host, body.tenant_id
    )
    if result is None:
        raise CredentialsSignInError()
    return _signed_in_response(request, result)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/signin/{provider}")
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the OAuth provider's authorization page."""
    _oauth_provider(request, provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the OAuth provider callback and issue the session cookie.

    Flow:
      1. Exchange the authorization code (authlib checks the state value).
      2. Normalize the provider profile to {id, name, email, image}.
      3. Resolve or create the user through the sign-in gate.
    """
    oauth_provider = _oauth_provider(request, provider)
    state = request.app.state
    client = state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        raise OAuthCallbackError(str(exc)) from exc

    try:
        profile = await fetch_oauth_profile(client, oauth_provider, token)
    except Exception as exc:
        logger.exception("OAuth profile fetch failed for provider %r", provider)
        raise OAuthCallbackError(str(exc)) from exc

    account = build_account(provider, profile, token)
    result = await run_in_threadpool(
        sign_in_with_oauth,
        state.store,
        state.gate,
        profile,
        account,
        getattr(request.state, "restricted", None),
    )
    return _signed_in_response(request, result)

"""
auth/oauth.py -- Identity provider registry and Authlib OAuth/OIDC wiring.

The registry is declarative: PROVIDER_SPECS is a fixed tuple of
(id, enabled predicate, builder) entries. build_providers() evaluates it once
at startup against Settings; there is no module-level mutable list and no
provider is registered as an import side effect.

Supported providers:
  credentials  -- credential exchange with the external host (always on)
  github       -- authorization code flow; static endpoints
  email        -- magic link / 6-digit code over SMTP
  google       -- OIDC discovery
  facebook     -- authorization code flow; Graph API profile
  gitlab       -- authorization code flow against GITLAB_BASE_URL (self-hosted ok)
  azure-ad     -- OIDC discovery for one tenant
  keycloak     -- OIDC discovery for <base>/<realm>
  custom-oauth -- any OIDC provider; profile fields mapped by configured paths

OAuth state (CSRF protection) is handled by Authlib via Starlette
SessionMiddleware. Profiles from every provider are normalized to
{"id", "name", "email", "image"} before they reach the sign-in gate.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from authlib.integrations.starlette_client import OAuth

from core.config import Settings

logger = logging.getLogger("builder.auth.oauth")


@dataclass
class Provider:
    id: str
    name: str
    type: str  # "oauth", "email", "credentials"
    register_kwargs: dict[str, Any] = field(default_factory=dict)  # passed to OAuth.register()
    profile_paths: dict[str, str] = field(default_factory=dict)  # custom-oauth field mapping


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    enabled: Callable[[Settings], bool]
    build: Callable[[Settings], Provider]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _oidc(server_metadata_url: str, client_id: str, client_secret: str, scope: str) -> dict[str, Any]:
    return {
        "client_id": client_id,
        "client_secret": client_secret,
        "server_metadata_url": server_metadata_url,
        "client_kwargs": {"scope": scope},
    }


def _github(cfg: Settings) -> Provider:
    return Provider(
        id="github",
        name="GitHub",
        type="oauth",
        register_kwargs={
            "client_id": cfg.github_client_id,
            "client_secret": cfg.github_client_secret,
            "access_token_url": "https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            "authorize_url": "https://github.com/login/oauth/authorize",
            "api_base_url": "https://api.github.com/",
            "client_kwargs": {"scope": "read:user user:email"},
        },
    )


def _google(cfg: Settings) -> Provider:
    return Provider(
        id="google",
        name="Google",
        type="oauth",
        register_kwargs=_oidc(
            "https://accounts.google.com/.well-known/openid-configuration",
            cfg.google_auth_client_id,
            cfg.google_auth_client_secret,
            "openid email profile",
        ),
    )


def _facebook(cfg: Settings) -> Provider:
    return Provider(
        id="facebook",
        name="Facebook",
        type="oauth",
        register_kwargs={
            "client_id": cfg.facebook_client_id,
            "client_secret": cfg.facebook_client_secret,
            "access_token_url": "https://graph.facebook.com/oauth/access_token",  # noqa: S106
            "authorize_url": "https://www.facebook.com/v15.0/dialog/oauth",
            "api_base_url": "https://graph.facebook.com/",
            "client_kwargs": {"scope": "email"},
        },
    )


def _gitlab(cfg: Settings) -> Provider:
    base = (cfg.gitlab_base_url or "https://gitlab.com").rstrip("/")
    return Provider(
        id="gitlab",
        name=cfg.gitlab_name or "GitLab",
        type="oauth",
        register_kwargs={
            "client_id": cfg.gitlab_client_id,
            "client_secret": cfg.gitlab_client_secret,
            "access_token_url": f"{base}/oauth/token",
            "authorize_url": f"{base}/oauth/authorize",
            "api_base_url": f"{base}/api/v4/",
            # read_api is needed for the group listing in auth/groups.py
            "client_kwargs": {"scope": "read_api"},
        },
    )


def _azure_ad(cfg: Settings) -> Provider:
    return Provider(
        id="azure-ad",
        name="Azure Active Directory",
        type="oauth",
        register_kwargs=_oidc(
            f"https://login.microsoftonline.com/{cfg.azure_ad_tenant_id}/v2.0/.well-known/openid-configuration",
            cfg.azure_ad_client_id,
            cfg.azure_ad_client_secret,
            "openid profile email",
        ),
    )


def _keycloak(cfg: Settings) -> Provider:
    issuer = f"{cfg.keycloak_base_url.rstrip('/')}/{cfg.keycloak_realm}"
    return Provider(
        id="keycloak",
        name="Keycloak",
        type="oauth",
        register_kwargs=_oidc(
            f"{issuer}/.well-known/openid-configuration",
            cfg.keycloak_client_id,
            cfg.keycloak_client_secret,
            "openid email profile",
        ),
    )


def _custom_oauth(cfg: Settings) -> Provider:
    return Provider(
        id="custom-oauth",
        name=cfg.custom_oauth_name,
        type="oauth",
        register_kwargs=_oidc(
            cfg.custom_oauth_well_known_url,
            cfg.custom_oauth_client_id,
            cfg.custom_oauth_client_secret,
            cfg.custom_oauth_scope,
        ),
        profile_paths={
            "id": cfg.custom_oauth_user_id_path,
            "name": cfg.custom_oauth_user_name_path,
            "email": cfg.custom_oauth_user_email_path,
            "image": cfg.custom_oauth_user_image_path,
        },
    )


PROVIDER_SPECS: tuple[ProviderSpec, ...] = (
    ProviderSpec("credentials", lambda cfg: True, lambda cfg: Provider("credentials", "credentials", "credentials")),
    ProviderSpec("github", lambda cfg: bool(cfg.github_client_id and cfg.github_client_secret), _github),
    ProviderSpec(
        "email",
        lambda cfg: bool(cfg.smtp_from) and not cfg.smtp_auth_disabled,
        lambda cfg: Provider("email", "Email", "email"),
    ),
    ProviderSpec("google", lambda cfg: bool(cfg.google_auth_client_id and cfg.google_auth_client_secret), _google),
    ProviderSpec("facebook", lambda cfg: bool(cfg.facebook_client_id and cfg.facebook_client_secret), _facebook),
    ProviderSpec("gitlab", lambda cfg: bool(cfg.gitlab_client_id and cfg.gitlab_client_secret), _gitlab),
    ProviderSpec(
        "azure-ad",
        lambda cfg: bool(cfg.azure_ad_client_id and cfg.azure_ad_client_secret and cfg.azure_ad_tenant_id),
        _azure_ad,
    ),
    ProviderSpec(
        "keycloak",
        lambda cfg: bool(
            cfg.keycloak_client_id and cfg.keycloak_client_secret and cfg.keycloak_base_url and cfg.keycloak_realm
        ),
        _keycloak,
    ),
    ProviderSpec("custom-oauth", lambda cfg: bool(cfg.custom_oauth_well_known_url), _custom_oauth),
)


def build_providers(settings: Settings, specs: tuple[ProviderSpec, ...] = PROVIDER_SPECS) -> list[Provider]:
    """Return the enabled providers, in registry order."""
    return [spec.build(settings) for spec in specs if spec.enabled(settings)]


def build_oauth_registry(providers: list[Provider]) -> OAuth:
    """Register every OAuth-type provider with a fresh Authlib registry."""
    oauth = OAuth()
    for provider in providers:
        if provider.type != "oauth":
            continue
        oauth.register(name=provider.id, **provider.register_kwargs)
        logger.info("%s OAuth provider registered (id=%s)", provider.name, provider.id)
    return oauth


# ---------------------------------------------------------------------------
# Profile normalization
# ---------------------------------------------------------------------------

_PATH_SEGMENT = re.compile(r"[^.\[\]]+")


def get_at_path(obj: Any, path: str) -> Any:
    """Read a nested value by dotted path with list indexes ("emails[0].value").

    Returns None as soon as a segment is missing.
    """
    current = obj
    for segment in _PATH_SEGMENT.findall(path or ""):
        if isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(segment)
        else:
            return None
        if current is None:
            return None
    return current


async def fetch_oauth_profile(client, provider: Provider, token: dict) -> dict[str, Any]:
    """Return the normalized {"id", "name", "email", "image"} profile for a token.

    Raises ValueError when the provider does not return an account id.
    """
    if provider.id == "github":
        profile = await _get_github_profile(client, token)
    elif provider.id == "facebook":
        resp = await client.get("me", params={"fields": "id,name,email,picture"}, token=token)
        resp.raise_for_status()
        data = resp.json()
        profile = {
            "id": data.get("id"),
            "name": data.get("name"),
            "email": data.get("email"),
            "image": get_at_path(data, "picture.data.url"),
        }
    elif provider.id == "gitlab":
        resp = await client.get("user", token=token)
        resp.raise_for_status()
        data = resp.json()
        profile = {
            "id": data.get("id"),
            "name": data.get("name") or data.get("username"),
            "email": data.get("email"),
            "image": data.get("avatar_url"),
        }
    else:
        userinfo = token.get("userinfo") or await client.userinfo(token=token)
        if provider.profile_paths:
            profile = {key: get_at_path(userinfo, path) for key, path in provider.profile_paths.items()}
        else:
            profile = {
                "id": userinfo.get("sub"),
                "name": userinfo.get("name"),
                "email": userinfo.get("email"),
                "image": userinfo.get("picture"),
            }

    if profile.get("id") is None:
        raise ValueError(f"{provider.id} OAuth: profile has no account id")
    profile["id"] = str(profile["id"])
    return profile


async def _get_github_profile(client, token: dict) -> dict[str, Any]:
    """GitHub profile; falls back to /user/emails when the public email is hidden.

    From the email list only the entry with primary=true AND verified=true is
    accepted. An unverified address could belong to someone else.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    data = resp.json()
    email = data.get("email")
    if not email:
        emails_resp = await client.get("user/emails", token=token)
        emails_resp.raise_for_status()
        email = next(
            (e["email"] for e in emails_resp.json() if e.get("primary") and e.get("verified")),
            None,
        )
    return {
        "id": data.get("id"),
        "name": data.get("name") or data.get("login"),
        "email": email,
        "image": data.get("avatar_url"),
    }


def build_account(provider_id: str, profile: dict[str, Any], token: dict[str, Any]) -> dict[str, Any]:
    """Map an Authlib token response onto the account payload the gate and store use."""
    return {
        "type": "oauth",
        "provider": provider_id,
        "provider_account_id": profile["id"],
        "access_token": token.get("access_token"),
        "refresh_token": token.get("refresh_token"),
        "expires_at": token.get("expires_at"),
        "token_type": token.get("token_type"),
        "scope": token.get("scope"),
        "id_token": token.get("id_token"),
        "session_state": token.get("session_state"),
    }

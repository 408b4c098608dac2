"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). The store owns
persistence; flows and routes do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class User:
    """An identity record.

    created_at doubles as the "already persisted" marker: provider profiles
    passed into the sign-in gate never carry it, stored users always do.
    """

    id: str
    email: str
    name: str | None = None
    image: str | None = None
    email_verified: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_activity_at: str | None = None
    company: str | None = None
    referral: str | None = None
    onboarding_categories: list[str] = field(default_factory=list)
    displayed_in_app_notifications: dict[str, Any] | None = None
    group_titles_auto_generation: dict[str, Any] | None = None
    preferred_app_appearance: str | None = None
    preferred_language: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Account:
    """Link between a user and an external identity, unique per (provider, provider_account_id)."""

    user_id: str
    type: str  # "oauth", "email", "credentials"
    provider: str
    provider_account_id: str
    id: str | None = None
    refresh_token: str | None = None
    access_token: str | None = None
    expires_at: int | None = None
    token_type: str | None = None
    scope: str | None = None
    id_token: str | None = None
    session_state: str | None = None
    oauth_token_secret: str | None = None
    oauth_token: str | None = None
    refresh_token_expires_in: int | None = None


@dataclass
class Session:
    session_token: str
    user_id: str
    expires: str  # ISO 8601
    id: str | None = None


@dataclass
class VerificationToken:
    """One-time sign-in code. token holds the HMAC of the code, never the code."""

    identifier: str  # destination email address
    token: str
    expires: str  # ISO 8601


@dataclass
class ApiToken:
    owner_id: str
    name: str
    token: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class Workspace:
    name: str
    plan: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class Membership:
    user_id: str
    workspace_id: str
    role: str  # "ADMIN", "MEMBER", "GUEST"


@dataclass
class Invitation:
    """Pending direct invitation to collaborate on a single typebot."""

    email: str
    typebot_id: str
    type: str  # "READ", "WRITE", "FULL_ACCESS"
    id: str | None = None
    workspace_id: str | None = None  # resolved from the typebot at lookup time
    created_at: str | None = None


@dataclass
class WorkspaceInvitation:
    email: str
    workspace_id: str
    type: str  # workspace role granted on join
    id: str | None = None
    created_at: str | None = None


@dataclass
class Collaboration:
    user_id: str
    typebot_id: str
    type: str

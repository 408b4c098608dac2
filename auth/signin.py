"""
auth/signin.py -- The sign-in decision pipeline.

Every sign-in attempt (OAuth callback, email link request and callback,
credential exchange) is put through SignInGate.authorize() before a session is
issued or a user is created. The gate is an ordered tuple of independent
stages. Each stage returns a Decision:

  proceed  -- no opinion, run the next stage
  allow    -- stop, sign-in permitted
  deny     -- stop, sign-in refused (authorize() returns False)
  fail     -- stop, raise the attached AuthError

Stage order:
  1. check_rate_limit        restricted="rate-limited" -> RateLimitedError
  2. check_account           no account payload -> deny
  3. check_disposable_email  new, non-admin, disposable domain -> deny
  4. check_signup_allowed    new, non-admin, sign-up disabled, not invited -> SignupDisabledError
  5. check_required_groups   provider allow-list configured, no shared group -> deny
  6. record_returning_login  existing user -> "User logged in" event

Reaching the end of the tuple allows the attempt. New-user side effects
(workspace, invitations, "User created") belong to AuthAdapter.create_user(),
not to the gate.

Denials are reported as a bare False: the caller learns only that
sign-in was refused, not which rule refused it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from auth.errors import AuthError, RateLimitedError, SignupDisabledError
from auth.groups import get_required_groups, get_user_groups, has_required_group
from core.config import Settings
from core.fetcher import fetch_disposable_domains
from core.telemetry import TelemetryEvent, track_events

if TYPE_CHECKING:
    from auth.store import AuthAdapter

logger = logging.getLogger("builder.auth.signin")

RATE_LIMITED = "rate-limited"


@dataclass
class SignInAttempt:
    """One login attempt as seen by the gate.

    user:       stored user (has created_at) or provider profile (does not).
    account:    the external-identity payload; None fails the attempt closed.
    restricted: tag set by the entry handler, e.g. "rate-limited".
    """

    user: dict[str, Any]
    account: dict[str, Any] | None
    restricted: str | None = None

    @property
    def is_new_user(self) -> bool:
        return self.user.get("created_at") is None

    @property
    def email(self) -> str | None:
        return self.user.get("email")


@dataclass(frozen=True)
class Decision:
    outcome: str  # "proceed", "allow", "deny", "fail"
    reason: str = ""
    error: AuthError | None = None

    @classmethod
    def proceed(cls) -> Decision:
        return cls("proceed")

    @classmethod
    def allow(cls, reason: str = "") -> Decision:
        return cls("allow", reason)

    @classmethod
    def deny(cls, reason: str) -> Decision:
        return cls("deny", reason)

    @classmethod
    def fail(cls, error: AuthError) -> Decision:
        return cls("fail", error.code, error)


Stage = Callable[[SignInAttempt], Decision]


class SignInGate:
    """Runs the sign-in stages in order against the configured policy."""

    def __init__(self, store: AuthAdapter, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    @property
    def stages(self) -> tuple[Stage, ...]:
        return (
            self.check_rate_limit,
            self.check_account,
            self.check_disposable_email,
            self.check_signup_allowed,
            self.check_required_groups,
            self.record_returning_login,
        )

    def evaluate(self, attempt: SignInAttempt) -> Decision:
        for stage in self.stages:
            decision = stage(attempt)
            if decision.outcome != "proceed":
                return decision
        return Decision.allow()

    def authorize(self, attempt: SignInAttempt) -> bool:
        """Return True to allow, False to deny; raise the AuthError of a failing stage."""
        decision = self.evaluate(attempt)
        if decision.outcome == "fail":
            logger.info("Sign-in failed for %s: %s", attempt.email, decision.reason)
            raise decision.error
        if decision.outcome == "deny":
            logger.info("Sign-in denied for %s: %s", attempt.email, decision.reason)
            return False
        return True

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def check_rate_limit(self, attempt: SignInAttempt) -> Decision:
        if attempt.restricted == RATE_LIMITED:
            return Decision.fail(RateLimitedError())
        return Decision.proceed()

    def check_account(self, attempt: SignInAttempt) -> Decision:
        if not attempt.account:
            return Decision.deny("missing_account")
        return Decision.proceed()

    def check_disposable_email(self, attempt: SignInAttempt) -> Decision:
        email = attempt.email
        if (
            not attempt.is_new_user
            or not email
            or self.settings.is_admin_email(email)
            or not self.settings.reject_disposable_emails
        ):
            return Decision.proceed()
        domains = fetch_disposable_domains(self.settings.disposable_email_blocklist_url)
        if email.split("@")[-1].lower() in domains:
            return Decision.deny("disposable_email")
        return Decision.proceed()

    def check_signup_allowed(self, attempt: SignInAttempt) -> Decision:
        email = attempt.email
        if (
            not self.settings.disable_signup
            or not attempt.is_new_user
            or not email
            or self.settings.is_admin_email(email)
        ):
            return Decision.proceed()
        if self.store.get_new_user_invitations(email).is_empty():
            return Decision.fail(SignupDisabledError())
        return Decision.proceed()

    def check_required_groups(self, attempt: SignInAttempt) -> Decision:
        account = attempt.account or {}
        required = get_required_groups(account.get("provider", ""), self.settings)
        if not required:
            return Decision.proceed()
        user_groups = get_user_groups(account, self.settings)
        if not has_required_group(user_groups, required):
            return Decision.deny("missing_required_group")
        return Decision.proceed()

    def record_returning_login(self, attempt: SignInAttempt) -> Decision:
        if not attempt.is_new_user:
            track_events(
                [TelemetryEvent(name="User logged in", user_id=attempt.user["id"])],
                url=self.settings.telemetry_url,
            )
        return Decision.proceed()

"""
auth/store.py -- SQLAlchemy Core persistence adapter for identity entities.

Pattern: Repository + Data Mapper (same shape as the rest of the codebase).
AuthAdapter is the repository the sign-in flows persist through; the
_row_to_* functions are the mappers. Route and flow code never touches SQL.

Contract:
  - Point lookups return None when nothing matches. Not-found is never raised.
  - use_verification_token() is a fetch-and-delete: whichever caller's DELETE
    removes the row wins, every other caller gets None. A second click on the
    same sign-in link is an expected race, not a fault.
  - Store failures (connectivity, constraint violations such as a duplicate
    (provider, provider_account_id) in link_account) are SQLAlchemy exceptions
    and propagate unchanged.
  - create_user() side effects that leave the process (webhook, telemetry)
    happen after the user row is committed. The webhook runs on a background
    executor and can only log.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: auth/builder_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import SingletonThreadPool

from auth import schema
from auth.errors import MissingEmailError, SignupDisabledError
from auth.invitations import (
    NewUserInvitations,
    convert_invitations_to_collaborations,
    get_new_user_invitations,
    join_workspaces,
)
from auth.models import (
    Account,
    ApiToken,
    Collaboration,
    Invitation,
    Membership,
    Session,
    User,
    VerificationToken,
    Workspace,
    WorkspaceInvitation,
)
from auth.tokens import generate_api_token, generate_id
from core.config import Settings, get_settings
from core.fetcher import notify_user_created
from core.telemetry import TelemetryEvent, track_events

logger = logging.getLogger("builder.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'builder_auth.db'}"

ADMIN_ROLE = "ADMIN"
WORKSPACE_PLANS = ("FREE", "STARTER", "PRO", "LIFETIME", "OFFERED", "CUSTOM", "UNLIMITED", "ENTERPRISE")

# Fields a provider/credential payload may set on a brand-new user. Anything
# else in the payload (provider ids, remote timestamps, ...) is dropped.
_CREATABLE_USER_FIELDS = (
    "name",
    "image",
    "email_verified",
    "company",
    "referral",
    "displayed_in_app_notifications",
    "group_titles_auto_generation",
    "preferred_app_appearance",
    "preferred_language",
)

_UPDATABLE_USER_FIELDS = frozenset(
    {
        "email",
        "name",
        "image",
        "email_verified",
        "last_activity_at",
        "company",
        "referral",
        "onboarding_categories",
        "displayed_in_app_notifications",
        "group_titles_auto_generation",
        "preferred_app_appearance",
        "preferred_language",
    }
)

_JSON_USER_FIELDS = ("onboarding_categories", "displayed_in_app_notifications", "group_titles_auto_generation")

_ACCOUNT_FIELDS = (
    "refresh_token",
    "access_token",
    "expires_at",
    "token_type",
    "scope",
    "id_token",
    "session_state",
    "oauth_token_secret",
    "oauth_token",
    "refresh_token_expires_in",
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _enable_foreign_keys(dbapi_conn, connection_record) -> None:
    """SQLite leaves FOREIGN KEY enforcement off per connection unless asked."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode_user_values(values: dict[str, Any]) -> dict[str, Any]:
    encoded = dict(values)
    for key in _JSON_USER_FIELDS:
        if key in encoded and encoded[key] is not None:
            encoded[key] = json.dumps(encoded[key])
    if isinstance(encoded.get("email_verified"), datetime):
        encoded["email_verified"] = encoded["email_verified"].isoformat()
    return encoded


def parse_workspace_default_plan(email: str, settings: Settings) -> str:
    """Plan for a user's first workspace: UNLIMITED for admins, else the configured default, else FREE."""
    if settings.is_admin_email(email):
        return "UNLIMITED"
    default_plan = settings.default_workspace_plan.upper()
    if default_plan in WORKSPACE_PLANS:
        return default_plan
    return "FREE"


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthAdapter:
    """Persistence adapter for users, accounts, sessions and verification tokens.

    Usage:
        store = AuthAdapter(settings=settings)
        user = store.create_user({"email": "ada@example.com", "name": "Ada"})
        store.link_account(Account(user_id=user.id, type="oauth", provider="github", provider_account_id="42"))
        store.get_user_by_account("github", "42")
        store.close()
    """

    def __init__(self, db_url: str = "", settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        db_url = db_url or self.settings.database_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Shared-cache memory DBs vanish with their last connection; keep one per thread.
            if "mode=memory" in db_url or ":memory:" in db_url:
                engine_kwargs["poolclass"] = SingletonThreadPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
            event.listen(self.engine, "connect", _enable_foreign_keys)
        schema.metadata.create_all(self.engine)
        self._background = ThreadPoolExecutor(max_workers=2, thread_name_prefix="user-created-webhook")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, data: dict[str, Any]) -> User:
        """Create a user from a provider or credential-host payload.

        Raises MissingEmailError without an email, SignupDisabledError when
        sign-up is disabled and the email is neither an admin nor invited.

        A user with pending workspace invitations joins those workspaces;
        everyone else gets a personal workspace with the ADMIN role. Never both.
        """
        email = data.get("email")
        if not email:
            raise MissingEmailError()

        user_id = data.get("id") or generate_id()
        now = _now_iso()

        with self.engine.connect() as conn:
            pending = get_new_user_invitations(conn, email)
            if self.settings.disable_signup and not self.settings.is_admin_email(email) and pending.is_empty():
                raise SignupDisabledError("New users are forbidden")

            values = {k: data[k] for k in _CREATABLE_USER_FIELDS if data.get(k) is not None}
            values.update(
                id=user_id,
                email=email,
                created_at=now,
                updated_at=now,
                last_activity_at=now,
                onboarding_categories=[],
            )
            conn.execute(schema.users.insert().values(**_encode_user_values(values)))
            conn.execute(
                schema.api_tokens.insert().values(
                    id=generate_id(),
                    owner_id=user_id,
                    name="Default",
                    token=generate_api_token(),
                    created_at=now,
                )
            )

            new_workspace_id: str | None = None
            if not pending.workspace_invitations:
                new_workspace_id = generate_id()
                name = data.get("name")
                conn.execute(
                    schema.workspaces.insert().values(
                        id=new_workspace_id,
                        name=f"{name}'s workspace" if name else "My workspace",
                        plan=parse_workspace_default_plan(email, self.settings),
                        created_at=now,
                    )
                )
                conn.execute(
                    schema.members_in_workspaces.insert().values(
                        user_id=user_id, workspace_id=new_workspace_id, role=ADMIN_ROLE
                    )
                )
            conn.commit()

        user = self.get_user(user_id)
        logger.info("User %s created (personal_workspace=%s)", user_id, new_workspace_id is not None)

        events: list[TelemetryEvent] = []
        if new_workspace_id:
            events.append(TelemetryEvent(name="Workspace created", user_id=user_id, workspace_id=new_workspace_id))
        events.append(TelemetryEvent(name="User created", user_id=user_id))

        if self.settings.user_created_webhook_url:
            self._background.submit(notify_user_created, self.settings.user_created_webhook_url, email)

        track_events(events, url=self.settings.telemetry_url)

        if not pending.is_empty():
            self._consume_invitations(user, pending)
        return user

    def _consume_invitations(self, user: User, pending: NewUserInvitations) -> None:
        with self.engine.connect() as conn:
            convert_invitations_to_collaborations(conn, user, pending.invitations)
            join_workspaces(conn, user, pending.workspace_invitations)
            conn.commit()
        logger.info(
            "User %s consumed %d invitations and %d workspace invitations",
            user.id,
            len(pending.invitations),
            len(pending.workspace_invitations),
        )

    def get_new_user_invitations(self, email: str) -> NewUserInvitations:
        with self.engine.connect() as conn:
            return get_new_user_invitations(conn, email)

    def get_user(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(schema.users.select().where(schema.users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(schema.users.select().where(schema.users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_account(self, provider: str, provider_account_id: str) -> User | None:
        """Return the user owning the (provider, provider_account_id) link, or None."""
        u, a = schema.users, schema.accounts
        with self.engine.connect() as conn:
            row = conn.execute(
                select(u)
                .select_from(u.join(a, a.c.user_id == u.c.id))
                .where((a.c.provider == provider) & (a.c.provider_account_id == provider_account_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_api_token(self, token: str) -> User | None:
        u, t = schema.users, schema.api_tokens
        with self.engine.connect() as conn:
            row = conn.execute(
                select(u).select_from(u.join(t, t.c.owner_id == u.c.id)).where(t.c.token == token)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> User | None:
        """Merge fields into an existing user and return the updated record.

        Only columns in _UPDATABLE_USER_FIELDS are accepted; unknown keys raise
        ValueError. Returns None if user_id does not exist.
        """
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        values = _encode_user_values(fields)
        values["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(schema.users.update().where(schema.users.c.id == user_id).values(**values))
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_user(user_id)

    def delete_user(self, user_id: str) -> User | None:
        """Delete a user row and return it.

        Accounts, sessions, API tokens, memberships and collaborations go with
        it (ON DELETE CASCADE), so the user's external identities can sign up
        again afterwards.
        """
        user = self.get_user(user_id)
        if user is None:
            return None
        with self.engine.connect() as conn:
            conn.execute(schema.users.delete().where(schema.users.c.id == user_id))
            conn.commit()
        return user

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def link_account(self, account: Account) -> Account:
        """Insert an account link.

        Raises sqlalchemy.exc.IntegrityError if the (provider,
        provider_account_id) pair is already linked, to this or any other user.
        """
        account_id = account.id or generate_id()
        with self.engine.connect() as conn:
            conn.execute(
                schema.accounts.insert().values(
                    id=account_id,
                    user_id=account.user_id,
                    type=account.type,
                    provider=account.provider,
                    provider_account_id=account.provider_account_id,
                    **{f: getattr(account, f) for f in _ACCOUNT_FIELDS},
                )
            )
            conn.commit()
        account.id = account_id
        return account

    def unlink_account(self, provider: str, provider_account_id: str) -> Account | None:
        a = schema.accounts
        where = (a.c.provider == provider) & (a.c.provider_account_id == provider_account_id)
        with self.engine.connect() as conn:
            row = conn.execute(a.select().where(where)).fetchone()
            if row is None:
                return None
            conn.execute(a.delete().where(where))
            conn.commit()
        return _row_to_account(row)

    def list_accounts(self, user_id: str) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                schema.accounts.select().where(schema.accounts.c.user_id == user_id).order_by(schema.accounts.c.provider)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        session_id = session.id or generate_id()
        with self.engine.connect() as conn:
            conn.execute(
                schema.sessions.insert().values(
                    id=session_id,
                    session_token=session.session_token,
                    user_id=session.user_id,
                    expires=session.expires,
                )
            )
            conn.commit()
        session.id = session_id
        return session

    def get_session_and_user(self, session_token: str) -> tuple[Session, User] | None:
        s, u = schema.sessions, schema.users
        with self.engine.connect() as conn:
            session_row = conn.execute(s.select().where(s.c.session_token == session_token)).fetchone()
            if session_row is None:
                return None
            user_row = conn.execute(u.select().where(u.c.id == session_row.user_id)).fetchone()
        if user_row is None:
            return None
        return _row_to_session(session_row), _row_to_user(user_row)

    def update_session(self, session_token: str, **fields) -> Session | None:
        unknown = set(fields) - {"expires", "user_id"}
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)!r}")
        s = schema.sessions
        with self.engine.connect() as conn:
            if fields:
                conn.execute(s.update().where(s.c.session_token == session_token).values(**fields))
                conn.commit()
            row = conn.execute(s.select().where(s.c.session_token == session_token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, session_token: str) -> Session | None:
        s = schema.sessions
        with self.engine.connect() as conn:
            row = conn.execute(s.select().where(s.c.session_token == session_token)).fetchone()
            if row is None:
                return None
            conn.execute(s.delete().where(s.c.session_token == session_token))
            conn.commit()
        return _row_to_session(row)

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> VerificationToken:
        with self.engine.connect() as conn:
            conn.execute(
                schema.verification_tokens.insert().values(
                    identifier=token.identifier,
                    token=token.token,
                    expires=token.expires,
                )
            )
            conn.commit()
        return token

    def use_verification_token(self, identifier: str, token: str) -> VerificationToken | None:
        """Fetch and delete a verification token. Returns None if it is already gone.

        The DELETE's rowcount decides who consumed the token: if a concurrent
        caller deleted it between our SELECT and DELETE, we report None too.
        Expiry is the caller's check; an expired token is still consumed.
        """
        vt = schema.verification_tokens
        where = (vt.c.identifier == identifier) & (vt.c.token == token)
        with self.engine.connect() as conn:
            row = conn.execute(vt.select().where(where)).fetchone()
            if row is None:
                return None
            result = conn.execute(vt.delete().where(where))
            conn.commit()
        if result.rowcount == 0:
            return None
        return VerificationToken(identifier=row.identifier, token=row.token, expires=row.expires)

    # ------------------------------------------------------------------
    # API tokens
    # ------------------------------------------------------------------

    def list_api_tokens(self, user_id: str) -> list[ApiToken]:
        t = schema.api_tokens
        with self.engine.connect() as conn:
            rows = conn.execute(t.select().where(t.c.owner_id == user_id).order_by(t.c.created_at)).fetchall()
        return [
            ApiToken(id=r.id, owner_id=r.owner_id, name=r.name, token=r.token, created_at=r.created_at) for r in rows
        ]

    # ------------------------------------------------------------------
    # Workspaces, typebots and invitations
    # ------------------------------------------------------------------

    def create_workspace(self, workspace: Workspace) -> str:
        workspace_id = workspace.id or generate_id()
        with self.engine.connect() as conn:
            conn.execute(
                schema.workspaces.insert().values(
                    id=workspace_id, name=workspace.name, plan=workspace.plan, created_at=_now_iso()
                )
            )
            conn.commit()
        return workspace_id

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        w = schema.workspaces
        with self.engine.connect() as conn:
            row = conn.execute(w.select().where(w.c.id == workspace_id)).fetchone()
        if row is None:
            return None
        return Workspace(id=row.id, name=row.name, plan=row.plan, created_at=row.created_at)

    def list_memberships(self, user_id: str) -> list[Membership]:
        m = schema.members_in_workspaces
        with self.engine.connect() as conn:
            rows = conn.execute(m.select().where(m.c.user_id == user_id).order_by(m.c.workspace_id)).fetchall()
        return [Membership(user_id=r.user_id, workspace_id=r.workspace_id, role=r.role) for r in rows]

    def create_typebot(self, workspace_id: str, name: str) -> str:
        typebot_id = generate_id()
        with self.engine.connect() as conn:
            conn.execute(schema.typebots.insert().values(id=typebot_id, workspace_id=workspace_id, name=name))
            conn.commit()
        return typebot_id

    def create_invitation(self, invitation: Invitation) -> str:
        invitation_id = invitation.id or generate_id()
        with self.engine.connect() as conn:
            conn.execute(
                schema.invitations.insert().values(
                    id=invitation_id,
                    email=invitation.email,
                    typebot_id=invitation.typebot_id,
                    type=invitation.type,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return invitation_id

    def create_workspace_invitation(self, invitation: WorkspaceInvitation) -> str:
        invitation_id = invitation.id or generate_id()
        with self.engine.connect() as conn:
            conn.execute(
                schema.workspace_invitations.insert().values(
                    id=invitation_id,
                    email=invitation.email,
                    workspace_id=invitation.workspace_id,
                    type=invitation.type,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return invitation_id

    def list_collaborations(self, user_id: str) -> list[Collaboration]:
        c = schema.collaborators_on_typebots
        with self.engine.connect() as conn:
            rows = conn.execute(c.select().where(c.c.user_id == user_id).order_by(c.c.typebot_id)).fetchall()
        return [Collaboration(user_id=r.user_id, typebot_id=r.typebot_id, type=r.type) for r in rows]

    def close(self) -> None:
        """Wait for pending webhook calls, then release DB connections."""
        self._background.shutdown(wait=True)
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        image=row.image,
        email_verified=row.email_verified,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_activity_at=row.last_activity_at,
        company=row.company,
        referral=row.referral,
        onboarding_categories=_loads(row.onboarding_categories) or [],
        displayed_in_app_notifications=_loads(row.displayed_in_app_notifications),
        group_titles_auto_generation=_loads(row.group_titles_auto_generation),
        preferred_app_appearance=row.preferred_app_appearance,
        preferred_language=row.preferred_language,
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        **{f: getattr(row, f) for f in _ACCOUNT_FIELDS},
    )


def _row_to_session(row) -> Session:
    return Session(id=row.id, session_token=row.session_token, user_id=row.user_id, expires=row.expires)

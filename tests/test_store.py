"""
tests/test_store.py -- Unit tests for AuthAdapter (auth/store.py).

Every test gets its own named shared-memory database from store_factory, so
no test sees another's users, workspaces or invitations.

Coverage:
  - create_user: personal workspace, default API token, plan selection
  - create_user: sign-up policy and the missing-email guard
  - create_user: workspace invitations vs. personal workspace (never both)
  - create_user: direct invitations become collaborations + guest invites
  - create_user: telemetry events and the user-created webhook
  - accounts, sessions, verification tokens, API-token lookup, update_user
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from conftest import make_settings
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import SingletonThreadPool

from auth.errors import MissingEmailError, SignupDisabledError
from auth.models import Account, Invitation, Session, VerificationToken, Workspace, WorkspaceInvitation
from auth.store import AuthAdapter, parse_workspace_default_plan


def _seed_workspace_with_typebot(store: AuthAdapter) -> tuple[str, str]:
    workspace_id = store.create_workspace(Workspace(name="Acme", plan="PRO"))
    typebot_id = store.create_typebot(workspace_id, "Lead capture")
    return workspace_id, typebot_id


class TestEngine:
    def test_memory_database_uses_one_connection_per_thread(self, store: AuthAdapter) -> None:
        assert isinstance(store.engine.pool, SingletonThreadPool)

    def test_sqlite_enforces_foreign_keys(self, store: AuthAdapter) -> None:
        with pytest.raises(IntegrityError):
            store.link_account(Account(user_id="no-such-user", type="oauth", provider="github", provider_account_id="1"))


# ---------------------------------------------------------------------------
# create_user -- personal workspace
# ---------------------------------------------------------------------------


class TestCreateUser:
    def test_new_user_gets_personal_admin_workspace(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "ada@example.com", "name": "Ada"})

        memberships = store.list_memberships(user.id)
        assert len(memberships) == 1
        assert memberships[0].role == "ADMIN"
        workspace = store.get_workspace(memberships[0].workspace_id)
        assert workspace is not None
        assert workspace.name == "Ada's workspace"
        assert workspace.plan == "FREE"

    def test_unnamed_user_gets_generic_workspace_name(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "anon@example.com"})
        workspace = store.get_workspace(store.list_memberships(user.id)[0].workspace_id)
        assert workspace.name == "My workspace"

    def test_default_api_token_created(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "token@example.com"})
        tokens = store.list_api_tokens(user.id)
        assert len(tokens) == 1
        assert tokens[0].name == "Default"
        assert len(tokens[0].token) == 24
        assert store.get_user_by_api_token(tokens[0].token).id == user.id

    def test_stored_user_has_timestamps_and_empty_categories(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "ts@example.com"})
        assert user.created_at is not None
        assert user.last_activity_at is not None
        assert user.onboarding_categories == []

    def test_caller_supplied_id_is_kept(self, store: AuthAdapter) -> None:
        user = store.create_user({"id": "remote-42", "email": "remote@example.com"})
        assert user.id == "remote-42"

    def test_unknown_payload_fields_are_dropped(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "extra@example.com", "provider_id": "x", "created_at": "1999"})
        assert user.created_at != "1999"

    def test_missing_email_raises(self, store: AuthAdapter) -> None:
        with pytest.raises(MissingEmailError):
            store.create_user({"name": "No Mail"})

    def test_admin_email_gets_unlimited_plan(self, store_factory) -> None:
        store = store_factory(make_settings(admin_email="boss@example.com,ops@example.com"))
        user = store.create_user({"email": "ops@example.com"})
        workspace = store.get_workspace(store.list_memberships(user.id)[0].workspace_id)
        assert workspace.plan == "UNLIMITED"


class TestWorkspacePlan:
    def test_configured_default_plan_is_case_insensitive(self) -> None:
        assert parse_workspace_default_plan("a@example.com", make_settings(default_workspace_plan="pro")) == "PRO"

    def test_unknown_default_plan_falls_back_to_free(self) -> None:
        assert parse_workspace_default_plan("a@example.com", make_settings(default_workspace_plan="gold")) == "FREE"

    def test_admin_overrides_default_plan(self) -> None:
        settings = make_settings(default_workspace_plan="starter", admin_email="a@example.com")
        assert parse_workspace_default_plan("a@example.com", settings) == "UNLIMITED"


# ---------------------------------------------------------------------------
# create_user -- sign-up policy
# ---------------------------------------------------------------------------


class TestSignupPolicy:
    def test_disabled_signup_rejects_uninvited_email(self, store_factory) -> None:
        store = store_factory(make_settings(disable_signup=True))
        with pytest.raises(SignupDisabledError):
            store.create_user({"email": "stranger@example.com"})
        assert store.get_user_by_email("stranger@example.com") is None

    def test_disabled_signup_allows_admin(self, store_factory) -> None:
        store = store_factory(make_settings(disable_signup=True, admin_email="root@example.com"))
        assert store.create_user({"email": "root@example.com"}).email == "root@example.com"

    def test_disabled_signup_allows_invited_email(self, store_factory) -> None:
        store = store_factory(make_settings(disable_signup=True))
        workspace_id, _ = _seed_workspace_with_typebot(store)
        store.create_workspace_invitation(
            WorkspaceInvitation(email="guest@example.com", workspace_id=workspace_id, type="MEMBER")
        )
        assert store.create_user({"email": "guest@example.com"}).email == "guest@example.com"


# ---------------------------------------------------------------------------
# create_user -- invitations
# ---------------------------------------------------------------------------


class TestInvitations:
    def test_workspace_invitation_replaces_personal_workspace(self, store: AuthAdapter) -> None:
        workspace_id, _ = _seed_workspace_with_typebot(store)
        store.create_workspace_invitation(
            WorkspaceInvitation(email="member@example.com", workspace_id=workspace_id, type="MEMBER")
        )

        user = store.create_user({"email": "member@example.com", "name": "Mem"})

        memberships = store.list_memberships(user.id)
        assert [(m.workspace_id, m.role) for m in memberships] == [(workspace_id, "MEMBER")]
        assert store.get_new_user_invitations("member@example.com").is_empty()

    def test_direct_invitation_becomes_collaboration_and_guest_invite(self, store: AuthAdapter) -> None:
        workspace_id, typebot_id = _seed_workspace_with_typebot(store)
        store.create_invitation(Invitation(email="collab@example.com", typebot_id=typebot_id, type="WRITE"))

        user = store.create_user({"email": "collab@example.com"})

        collaborations = store.list_collaborations(user.id)
        assert [(c.typebot_id, c.type) for c in collaborations] == [(typebot_id, "WRITE")]
        pending = store.get_new_user_invitations("collab@example.com")
        assert pending.invitations == []
        assert [(i.workspace_id, i.type) for i in pending.workspace_invitations] == [(workspace_id, "GUEST")]
        # Direct invitations alone do not suppress the personal workspace.
        assert [m.role for m in store.list_memberships(user.id)] == ["ADMIN"]

    def test_existing_guest_invite_is_not_duplicated(self, store: AuthAdapter) -> None:
        workspace_id, typebot_id = _seed_workspace_with_typebot(store)
        second_typebot = store.create_typebot(workspace_id, "Support")
        store.create_invitation(Invitation(email="two@example.com", typebot_id=typebot_id, type="READ"))
        store.create_invitation(Invitation(email="two@example.com", typebot_id=second_typebot, type="READ"))

        user = store.create_user({"email": "two@example.com"})

        assert len(store.list_collaborations(user.id)) == 2
        assert len(store.get_new_user_invitations("two@example.com").workspace_invitations) == 1

    def test_invitations_for_other_emails_are_untouched(self, store: AuthAdapter) -> None:
        workspace_id, typebot_id = _seed_workspace_with_typebot(store)
        store.create_invitation(Invitation(email="other@example.com", typebot_id=typebot_id, type="READ"))
        store.create_user({"email": "me@example.com"})
        assert len(store.get_new_user_invitations("other@example.com").invitations) == 1


# ---------------------------------------------------------------------------
# create_user -- side effects
# ---------------------------------------------------------------------------


class TestCreateUserSideEffects:
    def test_events_for_personal_workspace(self, store: AuthAdapter) -> None:
        with patch("auth.store.track_events") as mock_track:
            user = store.create_user({"email": "events@example.com"})
        events = mock_track.call_args.args[0]
        assert [e.name for e in events] == ["Workspace created", "User created"]
        assert all(e.user_id == user.id for e in events)
        assert events[0].workspace_id == store.list_memberships(user.id)[0].workspace_id

    def test_only_user_created_event_when_joining_workspace(self, store: AuthAdapter) -> None:
        workspace_id, _ = _seed_workspace_with_typebot(store)
        store.create_workspace_invitation(
            WorkspaceInvitation(email="joiner@example.com", workspace_id=workspace_id, type="MEMBER")
        )
        with patch("auth.store.track_events") as mock_track:
            store.create_user({"email": "joiner@example.com"})
        assert [e.name for e in mock_track.call_args.args[0]] == ["User created"]

    def test_webhook_called_with_email(self, store_factory) -> None:
        store = store_factory(make_settings(user_created_webhook_url="https://hooks.example.com/new-user"))
        with patch("auth.store.notify_user_created") as mock_notify:
            store.create_user({"email": "hook@example.com"})
            store._background.shutdown(wait=True)
        mock_notify.assert_called_once_with("https://hooks.example.com/new-user", "hook@example.com")

    def test_no_webhook_when_unconfigured(self, store: AuthAdapter) -> None:
        with patch("auth.store.notify_user_created") as mock_notify:
            store.create_user({"email": "nohook@example.com"})
            store._background.shutdown(wait=True)
        mock_notify.assert_not_called()


# ---------------------------------------------------------------------------
# Lookups and updates
# ---------------------------------------------------------------------------


class TestUsers:
    def test_lookups_return_none_when_missing(self, store: AuthAdapter) -> None:
        assert store.get_user("nope") is None
        assert store.get_user_by_email("nope@example.com") is None
        assert store.get_user_by_account("github", "nope") is None
        assert store.get_user_by_api_token("nope") is None

    def test_update_user_merges_fields(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "upd@example.com", "name": "Before"})
        updated = store.update_user(user.id, company="Acme", onboarding_categories=["marketing", "sales"])
        assert updated.name == "Before"
        assert updated.company == "Acme"
        assert updated.onboarding_categories == ["marketing", "sales"]

    def test_update_user_json_fields_round_trip(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "json@example.com"})
        updated = store.update_user(user.id, displayed_in_app_notifications={"hasSeenWelcome": True})
        assert updated.displayed_in_app_notifications == {"hasSeenWelcome": True}

    def test_update_user_rejects_unknown_fields(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "bad@example.com"})
        with pytest.raises(ValueError):
            store.update_user(user.id, created_at="2000-01-01")

    def test_update_missing_user_returns_none(self, store: AuthAdapter) -> None:
        assert store.update_user("missing", name="x") is None

    def test_delete_user(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "del@example.com"})
        assert store.delete_user(user.id).id == user.id
        assert store.get_user(user.id) is None
        assert store.delete_user(user.id) is None


class TestAccounts:
    def test_link_and_lookup_by_account(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "gh@example.com"})
        store.link_account(
            Account(user_id=user.id, type="oauth", provider="github", provider_account_id="42", access_token="gho_x")
        )
        assert store.get_user_by_account("github", "42").id == user.id
        assert store.list_accounts(user.id)[0].access_token == "gho_x"

    def test_duplicate_provider_account_raises(self, store: AuthAdapter) -> None:
        first = store.create_user({"email": "first@example.com"})
        second = store.create_user({"email": "second@example.com"})
        store.link_account(Account(user_id=first.id, type="oauth", provider="gitlab", provider_account_id="7"))
        with pytest.raises(IntegrityError):
            store.link_account(Account(user_id=second.id, type="oauth", provider="gitlab", provider_account_id="7"))
        assert store.get_user_by_account("gitlab", "7").id == first.id
        assert store.list_accounts(second.id) == []

    def test_delete_user_removes_linked_rows(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "cascade@example.com"})
        store.link_account(Account(user_id=user.id, type="oauth", provider="github", provider_account_id="99"))
        store.create_session(Session(session_token="tok-cascade", user_id=user.id, expires="2030-01-01T00:00:00+00:00"))

        store.delete_user(user.id)

        assert store.list_accounts(user.id) == []
        assert store.list_api_tokens(user.id) == []
        assert store.list_memberships(user.id) == []
        assert store.get_session_and_user("tok-cascade") is None
        assert store.unlink_account("github", "99") is None

        again = store.create_user({"email": "cascade@example.com"})
        store.link_account(Account(user_id=again.id, type="oauth", provider="github", provider_account_id="99"))
        assert store.get_user_by_account("github", "99").id == again.id

    def test_unlink_account(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "unlink@example.com"})
        store.link_account(Account(user_id=user.id, type="oauth", provider="google", provider_account_id="g1"))
        assert store.unlink_account("google", "g1").user_id == user.id
        assert store.get_user_by_account("google", "g1") is None
        assert store.unlink_account("google", "g1") is None


class TestSessions:
    def test_session_lifecycle(self, store: AuthAdapter) -> None:
        user = store.create_user({"email": "sess@example.com"})
        store.create_session(Session(session_token="tok-1", user_id=user.id, expires="2030-01-01T00:00:00+00:00"))

        session, session_user = store.get_session_and_user("tok-1")
        assert session_user.id == user.id

        updated = store.update_session("tok-1", expires="2031-01-01T00:00:00+00:00")
        assert updated.expires == "2031-01-01T00:00:00+00:00"

        assert store.delete_session("tok-1").session_token == "tok-1"
        assert store.get_session_and_user("tok-1") is None

    def test_update_session_rejects_unknown_fields(self, store: AuthAdapter) -> None:
        with pytest.raises(ValueError):
            store.update_session("tok", token="other")


class TestVerificationTokens:
    def test_token_is_single_use(self, store: AuthAdapter) -> None:
        store.create_verification_token(
            VerificationToken(identifier="v@example.com", token="hashed", expires="2030-01-01T00:00:00+00:00")
        )
        first = store.use_verification_token("v@example.com", "hashed")
        assert first is not None
        assert first.expires == "2030-01-01T00:00:00+00:00"
        assert store.use_verification_token("v@example.com", "hashed") is None

    def test_token_bound_to_identifier(self, store: AuthAdapter) -> None:
        store.create_verification_token(
            VerificationToken(identifier="a@example.com", token="t", expires="2030-01-01T00:00:00+00:00")
        )
        assert store.use_verification_token("b@example.com", "t") is None
        assert store.use_verification_token("a@example.com", "t") is not None

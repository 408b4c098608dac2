"""
auth/schema.py -- SQLAlchemy Core table definitions for identity entities.

Shared by auth/store.py (the adapter) and auth/invitations.py (the resolver),
which both work on the same connection inside one transaction.

Conventions:
  - String primary keys (generated by auth.tokens.generate_id unless supplied).
  - Timestamps are ISO 8601 UTC strings, like the rest of the codebase.
  - JSON-valued columns are serialized text; the store's row mappers decode them.
  - Rows owned by a user reference users.id with ON DELETE CASCADE.
  - Uniqueness invariants live in UNIQUE constraints so concurrent writers are
    serialized by the database, not by this process.
"""

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, UniqueConstraint

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("image", Text),
    Column("email_verified", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_activity_at", String(32), nullable=False),
    Column("company", String(255)),
    Column("referral", String(255)),
    Column("onboarding_categories", Text, nullable=False, server_default="[]"),  # JSON array
    Column("displayed_in_app_notifications", Text),  # JSON object
    Column("group_titles_auto_generation", Text),  # JSON object
    Column("preferred_app_appearance", String(30)),
    Column("preferred_language", String(10)),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("type", String(30), nullable=False),
    Column("provider", String(50), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("refresh_token", Text),
    Column("access_token", Text),
    Column("expires_at", Integer),
    Column("token_type", String(50)),
    Column("scope", Text),
    Column("id_token", Text),
    Column("session_state", Text),
    Column("oauth_token_secret", Text),
    Column("oauth_token", Text),
    Column("refresh_token_expires_in", Integer),
    UniqueConstraint("provider", "provider_account_id", name="uq_account_provider"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("session_token", String(255), nullable=False, unique=True),
    Column("user_id", String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("expires", String(32), nullable=False),
)

verification_tokens = Table(
    "verification_tokens",
    metadata,
    Column("identifier", String(255), nullable=False),
    Column("token", String(255), nullable=False),
    Column("expires", String(32), nullable=False),
    UniqueConstraint("identifier", "token", name="uq_verification_token"),
)

api_tokens = Table(
    "api_tokens",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("owner_id", String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

workspaces = Table(
    "workspaces",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("plan", String(30), nullable=False, server_default="FREE"),
    Column("created_at", String(32), nullable=False),
)

members_in_workspaces = Table(
    "members_in_workspaces",
    metadata,
    Column("user_id", String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("workspace_id", String(64), nullable=False),
    Column("role", String(30), nullable=False),
    UniqueConstraint("user_id", "workspace_id", name="uq_member_workspace"),
)

typebots = Table(
    "typebots",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("workspace_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
)

invitations = Table(
    "invitations",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), nullable=False, index=True),
    Column("typebot_id", String(64), nullable=False),
    Column("type", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("email", "typebot_id", name="uq_invitation_typebot"),
)

workspace_invitations = Table(
    "workspace_invitations",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), nullable=False, index=True),
    Column("workspace_id", String(64), nullable=False),
    Column("type", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("email", "workspace_id", name="uq_workspace_invitation"),
)

collaborators_on_typebots = Table(
    "collaborators_on_typebots",
    metadata,
    Column("user_id", String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("typebot_id", String(64), nullable=False),
    Column("type", String(30), nullable=False),
    UniqueConstraint("user_id", "typebot_id", name="uq_collaborator_typebot"),
)

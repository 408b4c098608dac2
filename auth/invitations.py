"""
auth/invitations.py -- Pending-invitation lookup and conversion for new users.

get_new_user_invitations() is a pure lookup used twice per sign-up: by the
sign-in gate (is this email allowed in while sign-up is disabled?) and by
AuthAdapter.create_user() (should the user get a personal workspace, and what
must be converted once the user row exists?).

The conversion helpers take an open connection so create_user() can run them
in its own transaction. Each deletes exactly the invitations it consumed, by
id, so an invitation created between lookup and conversion stays pending.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.engine import Connection

from auth import schema
from auth.models import Invitation, User, WorkspaceInvitation
from auth.tokens import generate_id

logger = logging.getLogger("builder.auth.invitations")

GUEST_ROLE = "GUEST"


@dataclass
class NewUserInvitations:
    invitations: list[Invitation] = field(default_factory=list)
    workspace_invitations: list[WorkspaceInvitation] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.invitations and not self.workspace_invitations


def get_new_user_invitations(conn: Connection, email: str) -> NewUserInvitations:
    inv, tb = schema.invitations, schema.typebots
    rows = conn.execute(
        select(inv, tb.c.workspace_id)
        .select_from(inv.outerjoin(tb, inv.c.typebot_id == tb.c.id))
        .where(inv.c.email == email)
        .order_by(inv.c.created_at)
    ).fetchall()
    invitations = [
        Invitation(
            id=r.id,
            email=r.email,
            typebot_id=r.typebot_id,
            type=r.type,
            workspace_id=r.workspace_id,
            created_at=r.created_at,
        )
        for r in rows
    ]

    ws_inv = schema.workspace_invitations
    ws_rows = conn.execute(
        ws_inv.select().where(ws_inv.c.email == email).order_by(ws_inv.c.created_at)
    ).fetchall()
    workspace_invitations = [
        WorkspaceInvitation(
            id=r.id,
            email=r.email,
            workspace_id=r.workspace_id,
            type=r.type,
            created_at=r.created_at,
        )
        for r in ws_rows
    ]
    return NewUserInvitations(invitations=invitations, workspace_invitations=workspace_invitations)


def convert_invitations_to_collaborations(conn: Connection, user: User, invitations: list[Invitation]) -> None:
    """Turn direct invitations into collaborations.

    The workspace owning each invited typebot receives a pending GUEST
    invitation for the user's email, unless one already exists.
    """
    if not invitations:
        return
    conn.execute(
        schema.collaborators_on_typebots.insert(),
        [{"user_id": user.id, "typebot_id": i.typebot_id, "type": i.type} for i in invitations],
    )

    ws_inv = schema.workspace_invitations
    workspace_ids = {i.workspace_id for i in invitations if i.workspace_id}
    already_pending = set(
        conn.execute(
            select(ws_inv.c.workspace_id).where(
                (ws_inv.c.email == user.email) & (ws_inv.c.workspace_id.in_(sorted(workspace_ids)))
            )
        ).scalars()
    )
    for workspace_id in sorted(workspace_ids - already_pending):
        conn.execute(
            ws_inv.insert().values(
                id=generate_id(),
                email=user.email,
                workspace_id=workspace_id,
                type=GUEST_ROLE,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
        )
    if already_pending:
        logger.debug("Guest invitations already pending for %s: %s", user.email, sorted(already_pending))

    conn.execute(schema.invitations.delete().where(schema.invitations.c.id.in_([i.id for i in invitations])))


def join_workspaces(conn: Connection, user: User, workspace_invitations: list[WorkspaceInvitation]) -> None:
    """Grant the invited roles and consume the invitations."""
    if not workspace_invitations:
        return
    conn.execute(
        schema.members_in_workspaces.insert(),
        [{"user_id": user.id, "workspace_id": i.workspace_id, "role": i.type} for i in workspace_invitations],
    )
    conn.execute(
        schema.workspace_invitations.delete().where(
            schema.workspace_invitations.c.id.in_([i.id for i in workspace_invitations])
        )
    )

"""Tenancy graph tests — organizations, roles, invitations, projects.

Learn: The two invariants that matter most here:
1. An organization never ends up without an owner
2. An invitation can be redeemed once, by the invited email, before expiry
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from accesscore.db.models import Invitation, utcnow
from accesscore.errors import (
    ConflictError,
    ExpiredError,
    InvalidValueError,
    InvariantViolationError,
    NotFoundError,
    PermissionDeniedError,
)
from accesscore.events.store import EventStore
from accesscore.services.tenancy_service import TenancyService


# ═══════════════════════════════════════════════════════════
# Organizations
# ═══════════════════════════════════════════════════════════


async def test_create_org_makes_creator_owner(db_session, make_user):
    user = await make_user()
    tenancy = TenancyService(db_session)
    org = await tenancy.create_organization("Acme", "acme", user.id)

    member = await tenancy.get_member(org.id, user.id)
    assert member.role == "owner"
    assert [(o.slug, role) for o, role in await tenancy.list_user_organizations(user.id)] == [
        ("acme", "owner")
    ]


async def test_slug_conflict(db_session, make_user):
    user = await make_user()
    tenancy = TenancyService(db_session)
    await tenancy.create_organization("Acme", "acme", user.id)
    with pytest.raises(ConflictError):
        await tenancy.create_organization("Other Acme", "acme", user.id)


async def test_invalid_slug_rejected(db_session, make_user):
    user = await make_user()
    with pytest.raises(InvalidValueError):
        await TenancyService(db_session).create_organization("Acme", "Acme Corp!", user.id)


async def test_org_creation_is_audited(db_session, make_user):
    user = await make_user()
    org = await TenancyService(db_session).create_organization("Acme", "acme-audit", user.id)
    events = await EventStore(db_session).read_stream(f"organization:{org.id}")
    assert [e.type for e in events] == ["organization.created"]


# ═══════════════════════════════════════════════════════════
# Roles and the last-owner rule
# ═══════════════════════════════════════════════════════════


async def test_demoting_last_owner_fails(db_session, org_setup):
    tenancy = TenancyService(db_session)
    with pytest.raises(InvariantViolationError):
        await tenancy.change_role(org_setup["org_id"], org_setup["owner_id"], "admin")
    member = await tenancy.get_member(org_setup["org_id"], org_setup["owner_id"])
    assert member.role == "owner"


async def test_removing_last_owner_fails(db_session, org_setup):
    tenancy = TenancyService(db_session)
    with pytest.raises(InvariantViolationError):
        await tenancy.remove_member(org_setup["org_id"], org_setup["owner_id"])
    assert await tenancy.get_member(org_setup["org_id"], org_setup["owner_id"]) is not None


async def test_owner_can_step_down_once_another_owner_exists(db_session, org_setup):
    tenancy = TenancyService(db_session)
    org_id = org_setup["org_id"]
    await tenancy.change_role(org_id, org_setup["admin_id"], "owner")
    member = await tenancy.change_role(org_id, org_setup["owner_id"], "member")
    assert member.role == "member"


async def test_unknown_role_rejected(db_session, org_setup):
    with pytest.raises(InvalidValueError):
        await TenancyService(db_session).change_role(
            org_setup["org_id"], org_setup["member_id"], "viewer"
        )


async def test_require_role(db_session, org_setup):
    tenancy = TenancyService(db_session)
    org_id = org_setup["org_id"]
    await tenancy.require_role(org_id, org_setup["admin_id"], ["owner", "admin"])
    with pytest.raises(PermissionDeniedError):
        await tenancy.require_role(org_id, org_setup["member_id"], ["owner", "admin"])
    with pytest.raises(PermissionDeniedError):
        await tenancy.require_role(org_id, org_setup["outsider_id"], ["member"])


async def test_remove_member(db_session, org_setup):
    tenancy = TenancyService(db_session)
    await tenancy.remove_member(org_setup["org_id"], org_setup["member_id"])
    assert await tenancy.get_member(org_setup["org_id"], org_setup["member_id"]) is None
    with pytest.raises(NotFoundError):
        await tenancy.remove_member(org_setup["org_id"], org_setup["member_id"])


# ═══════════════════════════════════════════════════════════
# Invitations
# ═══════════════════════════════════════════════════════════


async def test_accept_invitation_adds_member_with_role(db_session, org_setup):
    tenancy = TenancyService(db_session)
    org_id, outsider = org_setup["org_id"], org_setup["outsider_id"]
    inv = await tenancy.invite_member(
        org_id, org_setup["emails"]["outsider"].upper(), "admin", org_setup["owner_id"]
    )
    assert inv.email == org_setup["emails"]["outsider"]
    assert len(inv.token) == 64

    member = await tenancy.accept_invitation(inv.token, outsider)
    assert member.role == "admin"
    assert member.invited_by == org_setup["owner_id"]
    assert await tenancy.list_invitations(org_id) == []


async def test_invitation_is_single_use(db_session, org_setup):
    tenancy = TenancyService(db_session)
    inv = await tenancy.invite_member(
        org_setup["org_id"], org_setup["emails"]["outsider"], "member", org_setup["owner_id"]
    )
    token = inv.token
    await tenancy.accept_invitation(token, org_setup["outsider_id"])
    with pytest.raises(ConflictError):
        await tenancy.accept_invitation(token, org_setup["outsider_id"])


async def test_expired_invitation_rejected_and_not_consumed(db_session, org_setup):
    tenancy = TenancyService(db_session)
    inv = await tenancy.invite_member(
        org_setup["org_id"], org_setup["emails"]["outsider"], "member", org_setup["owner_id"]
    )
    inv_id, token = inv.id, inv.token
    await db_session.execute(
        update(Invitation)
        .where(Invitation.id == inv_id)
        .values(expires_at=utcnow() - timedelta(minutes=1))
    )
    await db_session.commit()
    db_session.expire_all()

    with pytest.raises(ExpiredError):
        await tenancy.accept_invitation(token, org_setup["outsider_id"])
    row = await db_session.get(Invitation, inv_id)
    assert row.accepted_at is None


async def test_invitation_for_another_email_is_refused(db_session, org_setup):
    tenancy = TenancyService(db_session)
    inv = await tenancy.invite_member(
        org_setup["org_id"], "someone-else@example.com", "member", org_setup["owner_id"]
    )
    inv_id, token = inv.id, inv.token
    with pytest.raises(PermissionDeniedError):
        await tenancy.accept_invitation(token, org_setup["outsider_id"])
    assert (await db_session.get(Invitation, inv_id)).accepted_at is None


async def test_unknown_token(db_session, org_setup):
    with pytest.raises(NotFoundError):
        await TenancyService(db_session).accept_invitation("nope", org_setup["outsider_id"])


async def test_inviting_existing_member_conflicts(db_session, org_setup):
    with pytest.raises(ConflictError):
        await TenancyService(db_session).invite_member(
            org_setup["org_id"], org_setup["emails"]["member"], "member", org_setup["owner_id"]
        )


async def test_revoke_invitation(db_session, org_setup):
    tenancy = TenancyService(db_session)
    inv = await tenancy.invite_member(
        org_setup["org_id"], "later@example.com", "member", org_setup["owner_id"]
    )
    inv_id = inv.id
    await tenancy.revoke_invitation(org_setup["org_id"], inv_id)
    assert await tenancy.list_invitations(org_setup["org_id"]) == []
    with pytest.raises(NotFoundError):
        await tenancy.revoke_invitation(org_setup["org_id"], inv_id)


# ═══════════════════════════════════════════════════════════
# Projects
# ═══════════════════════════════════════════════════════════


async def test_project_membership_follows_org(db_session, org_setup):
    tenancy = TenancyService(db_session)
    pid = org_setup["project_id"]
    assert await tenancy.is_project_member(pid, org_setup["member_id"])
    assert not await tenancy.is_project_member(pid, org_setup["outsider_id"])
    assert [p.id for p in await tenancy.list_projects(org_setup["org_id"])] == [pid]

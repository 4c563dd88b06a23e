"""Organization, member, invitation and project API routes.

Learn: Role requirements mirror the product's permission matrix:
- any member: view the org, its members and projects
- owner/admin: update the org, invite, change roles, remove members,
  create projects
- owner only: delete the org
The "at least one owner" rule is enforced in TenancyService, so even an
owner can't demote themselves if they are the last one.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.dependencies import Principal, get_current_user
from accesscore.db.engine import get_db
from accesscore.db.models import MemberRole
from accesscore.schemas.organization import (
    InvitationAccept,
    InvitationCreate,
    InvitationCreated,
    InvitationRead,
    MemberRead,
    MembershipRead,
    OrgCreate,
    OrgRead,
    OrgUpdate,
    OrgWithRole,
    ProjectCreate,
    ProjectRead,
    RoleChange,
)
from accesscore.services.tenancy_service import TenancyService

router = APIRouter()

ANY_ROLE = (MemberRole.OWNER, MemberRole.ADMIN, MemberRole.MEMBER)
MANAGERS = (MemberRole.OWNER, MemberRole.ADMIN)


def _svc(db: AsyncSession = Depends(get_db)) -> TenancyService:
    return TenancyService(db)


# ─── Organizations ──────────────────────────────────────


@router.post("/orgs", response_model=OrgRead, status_code=201)
async def create_org(
    body: OrgCreate,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    """Create an organization; the caller becomes its owner."""
    return await svc.create_organization(
        display_name=body.display_name,
        slug=body.slug,
        owner_id=principal.user_id,
        logo_url=body.logo_url,
    )


@router.get("/orgs", response_model=list[OrgWithRole])
async def list_orgs(
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    rows = await svc.list_user_organizations(principal.user_id)
    return [
        OrgWithRole(**OrgRead.model_validate(org).model_dump(), role=role)
        for org, role in rows
    ]


@router.get("/orgs/{org_id}", response_model=OrgRead)
async def get_org(
    org_id: int,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, ANY_ROLE)
    return await svc.get_organization(org_id)


@router.patch("/orgs/{org_id}", response_model=OrgRead)
async def update_org(
    org_id: int,
    body: OrgUpdate,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, MANAGERS)
    return await svc.update_organization(
        org_id,
        display_name=body.display_name,
        slug=body.slug,
        logo_url=body.logo_url,
    )


@router.delete("/orgs/{org_id}", status_code=204)
async def delete_org(
    org_id: int,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, (MemberRole.OWNER,))
    await svc.delete_organization(org_id)


# ─── Members ────────────────────────────────────────────


@router.get("/orgs/{org_id}/members", response_model=list[MemberRead])
async def list_members(
    org_id: int,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, ANY_ROLE)
    return [
        MemberRead(
            id=member.id,
            organization_id=member.organization_id,
            user_id=member.user_id,
            email=user.email,
            display_name=user.display_name,
            role=member.role,
            invited_by=member.invited_by,
            created_at=member.created_at,
        )
        for member, user in await svc.list_members(org_id)
    ]


@router.patch("/orgs/{org_id}/members/{user_id}", response_model=MembershipRead)
async def change_member_role(
    org_id: int,
    user_id: int,
    body: RoleChange,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, MANAGERS)
    return await svc.change_role(org_id, user_id, body.role)


@router.delete("/orgs/{org_id}/members/{user_id}", status_code=204)
async def remove_member(
    org_id: int,
    user_id: int,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    """Remove a member. Members may always remove themselves (leave)."""
    if user_id != principal.user_id:
        await svc.require_role(org_id, principal.user_id, MANAGERS)
    await svc.remove_member(org_id, user_id)


# ─── Invitations ────────────────────────────────────────


@router.post(
    "/orgs/{org_id}/invitations", response_model=InvitationCreated, status_code=201
)
async def invite_member(
    org_id: int,
    body: InvitationCreate,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, MANAGERS)
    return await svc.invite_member(org_id, body.email, body.role, principal.user_id)


@router.get("/orgs/{org_id}/invitations", response_model=list[InvitationRead])
async def list_invitations(
    org_id: int,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, MANAGERS)
    return await svc.list_invitations(org_id)


@router.delete("/orgs/{org_id}/invitations/{invitation_id}", status_code=204)
async def revoke_invitation(
    org_id: int,
    invitation_id: int,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, MANAGERS)
    await svc.revoke_invitation(org_id, invitation_id)


@router.post("/invitations/accept", response_model=MembershipRead)
async def accept_invitation(
    body: InvitationAccept,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    return await svc.accept_invitation(body.token, principal.user_id)


# ─── Projects ───────────────────────────────────────────


@router.post("/orgs/{org_id}/projects", response_model=ProjectRead, status_code=201)
async def create_project(
    org_id: int,
    body: ProjectCreate,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, MANAGERS)
    return await svc.create_project(org_id, body.display_name)


@router.get("/orgs/{org_id}/projects", response_model=list[ProjectRead])
async def list_projects(
    org_id: int,
    principal: Principal = Depends(get_current_user),
    svc: TenancyService = Depends(_svc),
):
    await svc.require_role(org_id, principal.user_id, ANY_ROLE)
    return await svc.list_projects(org_id)

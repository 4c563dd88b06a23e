"""API key management routes (organization and project scope).

Learn: Both scopes share one set of handlers through ApiKeyAuthority;
only the scope check differs. Issuing returns the plaintext key ONCE.
Keys are always addressed inside their scope: a key id that belongs to
another organization or project is a 404.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.authorization import authorize_project
from accesscore.auth.dependencies import Principal, get_current_user
from accesscore.db.engine import get_db
from accesscore.db.models import MemberRole
from accesscore.schemas.api_key import ApiKeyCreate, ApiKeyCreated, ApiKeyRead
from accesscore.services.api_key_service import mask, org_keys, project_keys
from accesscore.services.tenancy_service import TenancyService

router = APIRouter()

MANAGERS = (MemberRole.OWNER, MemberRole.ADMIN)


def _to_read(record, creator_email=None) -> ApiKeyRead:
    return ApiKeyRead(
        id=record.id,
        name=record.name,
        key_prefix=record.key_prefix,
        masked_key=mask(record.key_prefix),
        permissions=record.permissions,
        status=record.status.value,
        organization_id=record.organization_id,
        project_id=getattr(record, "project_id", None),
        created_by=record.created_by,
        created_by_email=creator_email,
        last_used_at=record.last_used_at,
        expires_at=record.expires_at,
        revoked_at=record.revoked_at,
        created_at=record.created_at,
    )


def _created(issued) -> ApiKeyCreated:
    return ApiKeyCreated(**_to_read(issued.record).model_dump(), key=issued.secret)


# ─── Organization keys ──────────────────────────────────


async def _org_manager(org_id: int, principal: Principal, db: AsyncSession) -> None:
    await TenancyService(db).require_role(org_id, principal.user_id, MANAGERS)


@router.post("/orgs/{org_id}/api-keys", response_model=ApiKeyCreated, status_code=201)
async def create_org_key(
    org_id: int,
    body: ApiKeyCreate,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Issue an organization key. The full key is only returned ONCE."""
    await _org_manager(org_id, principal, db)
    issued = await org_keys(db).issue(
        org_id,
        name=body.name,
        created_by=principal.user_id,
        permissions=body.permissions,
        expires_at=body.expires_at,
    )
    return _created(issued)


@router.get("/orgs/{org_id}/api-keys", response_model=list[ApiKeyRead])
async def list_org_keys(
    org_id: int,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _org_manager(org_id, principal, db)
    return [_to_read(k, email) for k, email in await org_keys(db).list_keys(org_id)]


@router.post("/orgs/{org_id}/api-keys/{key_id}/revoke", response_model=ApiKeyRead)
async def revoke_org_key(
    org_id: int,
    key_id: int,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _org_manager(org_id, principal, db)
    return _to_read(await org_keys(db).revoke(org_id, key_id))


@router.delete("/orgs/{org_id}/api-keys/{key_id}", status_code=204)
async def delete_org_key(
    org_id: int,
    key_id: int,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _org_manager(org_id, principal, db)
    await org_keys(db).delete(org_id, key_id)


# ─── Project keys ───────────────────────────────────────


@router.post(
    "/projects/{project_id}/api-keys", response_model=ApiKeyCreated, status_code=201
)
async def create_project_key(
    project_id: int,
    body: ApiKeyCreate,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Issue a project key. The full key is only returned ONCE."""
    await authorize_project(db, principal, project_id, roles=MANAGERS)
    issued = await project_keys(db).issue(
        project_id,
        name=body.name,
        created_by=principal.user_id,
        permissions=body.permissions,
        expires_at=body.expires_at,
    )
    return _created(issued)


@router.get("/projects/{project_id}/api-keys", response_model=list[ApiKeyRead])
async def list_project_keys(
    project_id: int,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await authorize_project(db, principal, project_id, roles=MANAGERS)
    return [
        _to_read(k, email) for k, email in await project_keys(db).list_keys(project_id)
    ]


@router.post(
    "/projects/{project_id}/api-keys/{key_id}/revoke", response_model=ApiKeyRead
)
async def revoke_project_key(
    project_id: int,
    key_id: int,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await authorize_project(db, principal, project_id, roles=MANAGERS)
    return _to_read(await project_keys(db).revoke(project_id, key_id))


@router.delete("/projects/{project_id}/api-keys/{key_id}", status_code=204)
async def delete_project_key(
    project_id: int,
    key_id: int,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await authorize_project(db, principal, project_id, roles=MANAGERS)
    await project_keys(db).delete(project_id, key_id)

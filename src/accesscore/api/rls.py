"""Row-level security API routes.

Learn: Session properties and policies are project configuration, so
writes need an org owner/admin (or a key with models:write); reads need
project membership (or models:read).

GET /projects/{id}/rls-context is what the query engine calls before
running a query for a user. A 422 response lists every missing
required property at once.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.authorization import authorize_project
from accesscore.auth.dependencies import Principal, get_current_principal
from accesscore.db.engine import get_db
from accesscore.db.models import MemberRole
from accesscore.errors import InvalidValueError
from accesscore.schemas.rls import (
    ContextEntry,
    PropertyValueBatch,
    PropertyValueRead,
    RlsContextRead,
    RlsPolicyCreate,
    RlsPolicyRead,
    RlsPolicyUpdate,
    SessionPropertyCreate,
    SessionPropertyRead,
    SessionPropertyUpdate,
)
from accesscore.services.rls_service import DeferredExpression, PolicyDetail, RlsService

router = APIRouter(prefix="/projects/{project_id}")

MANAGERS = (MemberRole.OWNER, MemberRole.ADMIN)


def _svc(db: AsyncSession = Depends(get_db)) -> RlsService:
    return RlsService(db)


async def _can_read(svc: RlsService, principal: Principal, project_id: int):
    return await authorize_project(svc.db, principal, project_id, permission="models:read")


async def _can_manage(svc: RlsService, principal: Principal, project_id: int):
    return await authorize_project(
        svc.db, principal, project_id, permission="models:write", roles=MANAGERS
    )


def _policy_read(detail: PolicyDetail) -> RlsPolicyRead:
    p = detail.policy
    return RlsPolicyRead(
        id=p.id,
        project_id=p.project_id,
        name=p.name,
        condition=p.condition,
        session_property_ids=detail.session_property_ids,
        model_ids=detail.model_ids,
        created_at=p.created_at,
    )


# ─── Session properties ─────────────────────────────────


@router.get("/session-properties", response_model=list[SessionPropertyRead])
async def list_properties(
    project_id: int,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_read(svc, principal, project_id)
    return await svc.list_properties(project_id)


@router.post("/session-properties", response_model=SessionPropertyRead, status_code=201)
async def define_property(
    project_id: int,
    body: SessionPropertyCreate,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_manage(svc, principal, project_id)
    return await svc.define_property(
        project_id,
        name=body.name,
        type=body.type,
        required=body.required,
        default_expr=body.default_expr,
    )


@router.patch("/session-properties/{property_id}", response_model=SessionPropertyRead)
async def update_property(
    project_id: int,
    property_id: int,
    body: SessionPropertyUpdate,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_manage(svc, principal, project_id)
    extra = {}
    if "default_expr" in body.model_fields_set:
        extra["default_expr"] = body.default_expr
    return await svc.update_property(
        project_id,
        property_id,
        name=body.name,
        type=body.type,
        required=body.required,
        **extra,
    )


@router.delete("/session-properties/{property_id}", status_code=204)
async def delete_property(
    project_id: int,
    property_id: int,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_manage(svc, principal, project_id)
    await svc.delete_property(project_id, property_id)


# ─── User values ────────────────────────────────────────


@router.get("/session-property-values", response_model=list[PropertyValueRead])
async def list_values(
    project_id: int,
    user_id: Optional[int] = Query(None),
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    target = await _target_user(svc, principal, project_id, user_id)
    return [
        PropertyValueRead(
            user_id=value.user_id,
            session_property_id=prop.id,
            name=prop.name,
            value=value.value,
        )
        for value, prop in await svc.list_user_values(target, project_id)
    ]


@router.put("/session-property-values", response_model=list[PropertyValueRead])
async def assign_values(
    project_id: int,
    body: PropertyValueBatch,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    """Set values for one or more users; all-or-nothing."""
    await _can_manage(svc, principal, project_id)
    rows = await svc.assign_values(
        project_id,
        [(v.user_id, v.session_property_id, v.value) for v in body.values],
    )
    names = {p.id: p.name for p in await svc.list_properties(project_id)}
    return [
        PropertyValueRead(
            user_id=row.user_id,
            session_property_id=row.session_property_id,
            name=names.get(row.session_property_id, ""),
            value=row.value,
        )
        for row in rows
    ]


@router.delete("/session-property-values/{user_id}/{property_id}", status_code=204)
async def unassign_value(
    project_id: int,
    user_id: int,
    property_id: int,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_manage(svc, principal, project_id)
    await svc.get_property(project_id, property_id)
    await svc.unassign_value(user_id, property_id)


# ─── Context resolution ─────────────────────────────────


async def _target_user(
    svc: RlsService, principal: Principal, project_id: int, user_id: Optional[int]
) -> int:
    """Users read their own data; reading someone else's needs owner/admin."""
    if principal.is_key:
        await _can_read(svc, principal, project_id)
        if user_id is None:
            raise InvalidValueError("user_id is required when using an API key")
        return user_id
    if user_id is None or user_id == principal.user_id:
        await _can_read(svc, principal, project_id)
        return principal.user_id
    await _can_manage(svc, principal, project_id)
    return user_id


@router.get("/rls-context", response_model=RlsContextRead)
async def resolve_context(
    project_id: int,
    user_id: Optional[int] = Query(None),
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    target = await _target_user(svc, principal, project_id, user_id)
    context = await svc.resolve_context(project_id, target)
    return RlsContextRead(
        project_id=project_id,
        user_id=target,
        context={
            name: (
                ContextEntry(value=value.expression, deferred=True)
                if isinstance(value, DeferredExpression)
                else ContextEntry(value=value)
            )
            for name, value in context.items()
        },
    )


# ─── Policies ───────────────────────────────────────────


@router.get("/rls-policies", response_model=list[RlsPolicyRead])
async def list_policies(
    project_id: int,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_read(svc, principal, project_id)
    return [_policy_read(d) for d in await svc.list_policies(project_id)]


@router.post("/rls-policies", response_model=RlsPolicyRead, status_code=201)
async def create_policy(
    project_id: int,
    body: RlsPolicyCreate,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_manage(svc, principal, project_id)
    detail = await svc.create_policy(
        project_id,
        name=body.name,
        condition=body.condition,
        session_property_ids=body.session_property_ids,
        model_ids=body.model_ids,
    )
    return _policy_read(detail)


@router.get("/rls-policies/{policy_id}", response_model=RlsPolicyRead)
async def get_policy(
    project_id: int,
    policy_id: int,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_read(svc, principal, project_id)
    return _policy_read(await svc.get_policy(project_id, policy_id))


@router.patch("/rls-policies/{policy_id}", response_model=RlsPolicyRead)
async def update_policy(
    project_id: int,
    policy_id: int,
    body: RlsPolicyUpdate,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_manage(svc, principal, project_id)
    detail = await svc.update_policy(
        project_id,
        policy_id,
        name=body.name,
        condition=body.condition,
        session_property_ids=body.session_property_ids,
        model_ids=body.model_ids,
    )
    return _policy_read(detail)


@router.delete("/rls-policies/{policy_id}", status_code=204)
async def delete_policy(
    project_id: int,
    policy_id: int,
    principal: Principal = Depends(get_current_principal),
    svc: RlsService = Depends(_svc),
):
    await _can_manage(svc, principal, project_id)
    await svc.delete_policy(project_id, policy_id)

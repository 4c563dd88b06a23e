"""Principal resolution and FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to turn the
credential on a request into a Principal.

Three credential shapes, told apart by their leading tag:
1. osk-...  organization API key → scope = that organization
2. psk-...  project API key      → scope = that project (and its org)
3. anything else                 → opaque session token → a user

Optional X-Organization-Id / X-Project-Id headers narrow the scope;
for users they must be backed by a membership, for keys they must sit
inside the key's scope. Every failure is the same 401.
"""

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.tokens import ORG_KEY_TAG, PROJECT_KEY_TAG
from accesscore.db.engine import get_db
from accesscore.db.models import Project
from accesscore.errors import AuthenticationError, PermissionDeniedError
from accesscore.services.api_key_service import has_permission, org_keys, project_keys
from accesscore.services.credential_service import CredentialService
from accesscore.services.tenancy_service import TenancyService

USER = "user"
ORG_KEY = "org_key"
PROJECT_KEY = "project_key"


class Principal:
    """The authenticated actor behind a request.

    Learn: This is the unified auth context. Could be a user (session)
    or an API key (programmatic access). Downstream code checks
    `kind` before trusting user-only facts like folder ownership.
    """

    def __init__(
        self,
        kind: str,
        user_id: Optional[int] = None,
        organization_id: Optional[int] = None,
        project_id: Optional[int] = None,
        permissions: Optional[list[str]] = None,
        key_id: Optional[int] = None,
    ):
        self.kind = kind
        self.user_id = user_id
        self.organization_id = organization_id
        self.project_id = project_id
        self.permissions = permissions
        self.key_id = key_id

    @property
    def is_user(self) -> bool:
        return self.kind == USER

    @property
    def is_key(self) -> bool:
        return self.kind in (ORG_KEY, PROJECT_KEY)

    def has_permission(self, permission: str) -> bool:
        """Users are not limited by key permissions; keys are."""
        if self.is_user:
            return True
        return has_permission(self.permissions, permission)

    def __repr__(self) -> str:
        return (
            f"Principal(kind={self.kind!r}, user_id={self.user_id}, "
            f"organization_id={self.organization_id}, project_id={self.project_id})"
        )


async def authenticate(
    db: AsyncSession,
    credential: Optional[str],
    organization_id: Optional[int] = None,
    project_id: Optional[int] = None,
) -> Principal:
    """Resolve a raw credential to a Principal or raise AuthenticationError."""
    if not credential:
        raise AuthenticationError("Authentication required")

    if credential.startswith(f"{ORG_KEY_TAG}-"):
        key = await org_keys(db).verify(credential)
        if key is None:
            raise AuthenticationError("Invalid API key")
        if organization_id is not None and organization_id != key.organization_id:
            raise AuthenticationError("Invalid API key")
        if project_id is not None:
            project = await db.get(Project, project_id)
            if project is None or project.organization_id != key.organization_id:
                raise AuthenticationError("Invalid API key")
        return Principal(
            kind=ORG_KEY,
            organization_id=key.organization_id,
            project_id=project_id,
            permissions=key.permissions,
            key_id=key.key_id,
        )

    if credential.startswith(f"{PROJECT_KEY_TAG}-"):
        key = await project_keys(db).verify(credential)
        if key is None:
            raise AuthenticationError("Invalid API key")
        if organization_id is not None and organization_id != key.organization_id:
            raise AuthenticationError("Invalid API key")
        if project_id is not None and project_id != key.project_id:
            raise AuthenticationError("Invalid API key")
        return Principal(
            kind=PROJECT_KEY,
            organization_id=key.organization_id,
            project_id=key.project_id,
            permissions=key.permissions,
            key_id=key.key_id,
        )

    user = await CredentialService(db).validate_session(credential)
    if user is None:
        raise AuthenticationError("Invalid or expired session")

    tenancy = TenancyService(db)
    if project_id is not None:
        project = await db.get(Project, project_id)
        if project is None or (
            organization_id is not None and project.organization_id != organization_id
        ):
            raise AuthenticationError()
        organization_id = project.organization_id
    if organization_id is not None:
        if await tenancy.get_member(organization_id, user.id) is None:
            raise AuthenticationError()

    return Principal(
        kind=USER,
        user_id=user.id,
        organization_id=organization_id,
        project_id=project_id,
    )


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip()
    return None


async def get_current_principal(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
    x_organization_id: Optional[int] = Header(None),
    x_project_id: Optional[int] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Extract the current principal (401 if missing or invalid).

    Learn: The credential comes from `Authorization: Bearer ...` or the
    `X-API-Key` header; both accept keys, only Bearer is used for
    sessions in practice.
    """
    credential = x_api_key or bearer_token(authorization)
    return await authenticate(
        db,
        credential,
        organization_id=x_organization_id,
        project_id=x_project_id,
    )


async def get_current_user(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """Like get_current_principal, but API keys are refused (403)."""
    if not principal.is_user:
        raise PermissionDeniedError("This endpoint requires a user session")
    return principal

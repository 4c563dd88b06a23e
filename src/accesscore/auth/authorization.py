"""Authorization decisions against current persisted state.

Learn: authorize() answers "may this principal do `action` to this
resource?" with no caching, so revocations and role changes take
effect on the next call.

Key principals are limited twice: the resource's project must sit
inside the key's scope, and the key needs "<resource>s:<action>"
(e.g. "threads:write"). User principals follow folder rules; items
that aren't filed in any folder are open to every project member.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.dependencies import PROJECT_KEY, Principal
from accesscore.db.models import Folder, MemberRole, Project
from accesscore.errors import InvalidValueError, NotFoundError, PermissionDeniedError
from accesscore.services.folder_service import ITEM_MODELS, AccessLevel, FolderService
from accesscore.services.tenancy_service import TenancyService

ACTIONS = ("read", "write")
RESOURCE_TYPES = ("folder", *ITEM_MODELS)


@dataclass(frozen=True)
class Resource:
    type: str
    id: int


def _key_covers(principal: Principal, project: Project) -> bool:
    if principal.kind == PROJECT_KEY:
        return project.id == principal.project_id
    return project.organization_id == principal.organization_id


async def authorize(
    db: AsyncSession, principal: Principal, resource: Resource, action: str
) -> bool:
    """Return True if `principal` may `action` ("read"/"write") the resource."""
    if action not in ACTIONS:
        raise InvalidValueError(f"Unknown action: {action}")
    if resource.type not in RESOURCE_TYPES:
        raise InvalidValueError(f"Unknown resource type: {resource.type}")

    folders = FolderService(db)
    if resource.type == "folder":
        folder = await folders.get_folder(resource.id)
        if folder is None:
            return False
        project_id, folder_id = folder.project_id, folder.id
    else:
        item = await db.get(ITEM_MODELS[resource.type], resource.id)
        if item is None:
            return False
        project_id, folder_id = item.project_id, item.folder_id

    if principal.is_key:
        project = await db.get(Project, project_id)
        if project is None or not _key_covers(principal, project):
            return False
        return principal.has_permission(f"{resource.type}s:{action}")

    if folder_id is None:
        return await TenancyService(db).is_project_member(project_id, principal.user_id)

    folder = folder if resource.type == "folder" else await db.get(Folder, folder_id)
    level = await folders.access_level(folder, principal.user_id)
    if level is None:
        return False
    return action == "read" or level is AccessLevel.WRITE


async def ensure_authorized(
    db: AsyncSession, principal: Principal, resource: Resource, action: str
) -> None:
    if not await authorize(db, principal, resource, action):
        raise PermissionDeniedError(f"Not allowed to {action} {resource.type} {resource.id}")


async def authorize_project(
    db: AsyncSession,
    principal: Principal,
    project_id: int,
    permission: Optional[str] = None,
    roles: Optional[Iterable[MemberRole]] = None,
) -> Project:
    """Gate project-level endpoints.

    Keys need the project in scope (and `permission` when given); users
    need membership in the owning organization (with one of `roles` when
    given). Returns the project.
    """
    project = await db.get(Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")

    if principal.is_key:
        if not _key_covers(principal, project):
            raise PermissionDeniedError("API key is not valid for this project")
        if permission and not principal.has_permission(permission):
            raise PermissionDeniedError(f"API key lacks permission {permission}")
        return project

    tenancy = TenancyService(db)
    if roles is not None:
        await tenancy.require_role(project.organization_id, principal.user_id, roles)
    elif await tenancy.get_member(project.organization_id, principal.user_id) is None:
        raise PermissionDeniedError("You are not a member of this project")
    return project

"""Folder API routes.

Learn: Listing bootstraps the caller's personal folder and the
project's public folder, so a fresh project is usable on first load.
Mutations check access through FolderService.access_level; system
folders refuse rename/delete/sharing with a 409.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.authorization import Resource, authorize_project, ensure_authorized
from accesscore.auth.dependencies import Principal, get_current_principal, get_current_user
from accesscore.db.engine import get_db
from accesscore.errors import PermissionDeniedError
from accesscore.schemas.folder import (
    FolderAccessRead,
    FolderAccessSet,
    FolderCreate,
    FolderRead,
    FolderReorder,
    FolderUpdate,
    ItemMove,
    ItemRead,
)
from accesscore.services.folder_service import FolderService

router = APIRouter()


def _svc(db: AsyncSession = Depends(get_db)) -> FolderService:
    return FolderService(db)


async def _writable(svc: FolderService, folder_id: int, principal: Principal):
    folder = await svc.require_folder(folder_id)
    if not await svc.can_write(folder, principal.user_id):
        raise PermissionDeniedError(f"Not allowed to modify folder {folder_id}")
    return folder


async def _readable(svc: FolderService, folder_id: int, principal: Principal):
    folder = await svc.require_folder(folder_id)
    if not await svc.can_read(folder, principal.user_id):
        raise PermissionDeniedError(f"Not allowed to read folder {folder_id}")
    return folder


# ─── Folders ────────────────────────────────────────────


@router.get("/projects/{project_id}/folders", response_model=list[FolderRead])
async def list_folders(
    project_id: int,
    principal: Principal = Depends(get_current_user),
    svc: FolderService = Depends(_svc),
):
    """Folders visible to the caller, ordered by sort order."""
    await authorize_project(svc.db, principal, project_id)
    return await svc.list_folders(project_id, principal.user_id)


@router.post("/projects/{project_id}/folders", response_model=FolderRead, status_code=201)
async def create_folder(
    project_id: int,
    body: FolderCreate,
    principal: Principal = Depends(get_current_user),
    svc: FolderService = Depends(_svc),
):
    await authorize_project(svc.db, principal, project_id)
    return await svc.create_folder(
        project_id, principal.user_id, name=body.name, visibility=body.visibility
    )


@router.post("/projects/{project_id}/folders/reorder", response_model=list[FolderRead])
async def reorder_folders(
    project_id: int,
    body: FolderReorder,
    principal: Principal = Depends(get_current_user),
    svc: FolderService = Depends(_svc),
):
    await authorize_project(svc.db, principal, project_id)
    return await svc.reorder_folders(project_id, body.folder_ids)


@router.patch("/folders/{folder_id}", response_model=FolderRead)
async def update_folder(
    folder_id: int,
    body: FolderUpdate,
    principal: Principal = Depends(get_current_user),
    svc: FolderService = Depends(_svc),
):
    folder = await _writable(svc, folder_id, principal)
    if body.name is not None:
        folder = await svc.rename_folder(folder_id, body.name)
    if body.visibility is not None:
        folder = await svc.set_visibility(folder_id, body.visibility)
    return folder


@router.delete("/folders/{folder_id}", status_code=204)
async def delete_folder(
    folder_id: int,
    principal: Principal = Depends(get_current_user),
    svc: FolderService = Depends(_svc),
):
    """Delete a custom folder; its items become unfiled."""
    await _writable(svc, folder_id, principal)
    await svc.delete_folder(folder_id)


# ─── Access grants ──────────────────────────────────────


@router.get("/folders/{folder_id}/access", response_model=list[FolderAccessRead])
async def get_folder_access(
    folder_id: int,
    principal: Principal = Depends(get_current_user),
    svc: FolderService = Depends(_svc),
):
    await _readable(svc, folder_id, principal)
    return await svc.get_folder_access(folder_id)


@router.put("/folders/{folder_id}/access", response_model=list[FolderAccessRead])
async def set_folder_access(
    folder_id: int,
    body: FolderAccessSet,
    principal: Principal = Depends(get_current_user),
    svc: FolderService = Depends(_svc),
):
    """Replace every grant on the folder."""
    await _writable(svc, folder_id, principal)
    return await svc.set_access(folder_id, [(e.user_id, e.role) for e in body.entries])


@router.delete("/folders/{folder_id}/access/{user_id}", status_code=204)
async def revoke_folder_access(
    folder_id: int,
    user_id: int,
    principal: Principal = Depends(get_current_user),
    svc: FolderService = Depends(_svc),
):
    await _writable(svc, folder_id, principal)
    await svc.revoke_access(folder_id, user_id)


# ─── Items ──────────────────────────────────────────────


@router.post("/projects/{project_id}/items/move", response_model=ItemRead)
async def move_item(
    project_id: int,
    body: ItemMove,
    principal: Principal = Depends(get_current_principal),
    svc: FolderService = Depends(_svc),
):
    """File an item into a folder (or unfile it with folder_id=null).

    Needs write on the item and, when filing, write on the target folder.
    """
    await authorize_project(svc.db, principal, project_id)
    item = await svc.get_item(body.item_type, body.item_id)
    if item.project_id != project_id:
        raise PermissionDeniedError("Item belongs to a different project")
    await ensure_authorized(svc.db, principal, Resource(body.item_type, body.item_id), "write")
    if body.folder_id is not None:
        await ensure_authorized(svc.db, principal, Resource("folder", body.folder_id), "write")
    return await svc.move_item_to_folder(body.item_type, body.item_id, body.folder_id)

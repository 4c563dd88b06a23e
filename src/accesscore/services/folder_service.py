"""Folder service — system folders, custom folders, grants and item filing.

Learn: Each project has two kinds of folders:

- System folders, created lazily on first access:
    personal  one per (project, user), private to that user
    public    one per project, readable by every project member
- Custom folders, created by users, shared through visibility and
  explicit editor/viewer grants.

Bootstrap is insert-or-fetch: look for the row, try to insert it inside
a SAVEPOINT, and on a unique-index violation re-read the row the other
request just created. The partial unique indexes on `folders` are what
make two concurrent first requests converge on one folder.

Access levels, strongest first:
    owner of a custom/personal folder      → write
    editor grant                           → write
    viewer grant                           → read
    shared custom folder, project member   → read
    public folder, project member          → read (org owner/admin: write)
    anything else                          → none
"""

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.db.models import (
    Dashboard,
    Folder,
    FolderAccess,
    FolderAccessRole,
    FolderType,
    FolderVisibility,
    Member,
    MemberRole,
    Project,
    Spreadsheet,
    Thread,
)
from accesscore.errors import (
    InvalidValueError,
    InvariantViolationError,
    NotFoundError,
)
from accesscore.events.store import EventStore
from accesscore.events.types import (
    FOLDER_ACCESS_GRANTED,
    FOLDER_ACCESS_REVOKED,
    FOLDER_CREATED,
    FOLDER_DELETED,
    FOLDER_RENAMED,
    FOLDER_VISIBILITY_CHANGED,
    FOLDERS_REORDERED,
    ITEM_MOVED,
)

logger = structlog.get_logger()

PERSONAL_FOLDER_NAME = "Personal Folder"
PUBLIC_FOLDER_NAME = "Public Folder"

ITEM_MODELS = {
    "dashboard": Dashboard,
    "thread": Thread,
    "spreadsheet": Spreadsheet,
}


class AccessLevel(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass
class SystemFolders:
    personal: Folder
    public: Folder


def item_model(item_type: str):
    try:
        return ITEM_MODELS[item_type]
    except KeyError:
        raise InvalidValueError(f"Unknown item type: {item_type}")


class FolderService:
    """Business logic for folders and folder access."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventStore(db)

    # ─── Lookups ────────────────────────────────────────

    async def get_folder(self, folder_id: int) -> Folder | None:
        return await self.db.get(Folder, folder_id)

    async def require_folder(self, folder_id: int) -> Folder:
        folder = await self.get_folder(folder_id)
        if not folder:
            raise NotFoundError(f"Folder {folder_id} not found")
        return folder

    async def find_personal_folder(self, project_id: int, owner_id: int) -> Folder | None:
        result = await self.db.execute(
            select(Folder).where(
                Folder.project_id == project_id,
                Folder.type == FolderType.PERSONAL.value,
                Folder.owner_id == owner_id,
            )
        )
        return result.scalars().first()

    async def find_public_folder(self, project_id: int) -> Folder | None:
        result = await self.db.execute(
            select(Folder).where(
                Folder.project_id == project_id,
                Folder.type == FolderType.PUBLIC.value,
            )
        )
        return result.scalars().first()

    async def _next_sort_order(self, project_id: int) -> int:
        result = await self.db.execute(
            select(func.max(Folder.sort_order)).where(Folder.project_id == project_id)
        )
        current = result.scalar_one()
        return 0 if current is None else current + 1

    # ─── System folders ─────────────────────────────────

    async def _insert_or_fetch(
        self,
        find: Callable[[], Awaitable[Optional[Folder]]],
        folder: Folder,
    ) -> Folder:
        existing = await find()
        if existing is not None:
            return existing

        folder.sort_order = await self._next_sort_order(folder.project_id)
        try:
            async with self.db.begin_nested():
                self.db.add(folder)
                await self.db.flush()
        except IntegrityError:
            # Lost the race: the other writer's row is committed or visible now.
            existing = await find()
            if existing is None:
                raise
            logger.info(
                "folder.bootstrap_conflict",
                project_id=folder.project_id,
                type=folder.type,
            )
            return existing

        await self.events.append(
            stream_id=f"project:{folder.project_id}",
            event_type=FOLDER_CREATED,
            data={"folder_id": folder.id, "type": folder.type, "owner_id": folder.owner_id},
        )
        return folder

    async def ensure_system_folders(self, project_id: int, user_id: int) -> SystemFolders:
        """Return (creating if needed) the caller's personal folder and the project's public folder.

        Idempotent and safe under concurrent first access.
        """
        personal = await self._insert_or_fetch(
            lambda: self.find_personal_folder(project_id, user_id),
            Folder(
                project_id=project_id,
                name=PERSONAL_FOLDER_NAME,
                type=FolderType.PERSONAL.value,
                owner_id=user_id,
                visibility=FolderVisibility.PRIVATE.value,
            ),
        )
        public = await self._insert_or_fetch(
            lambda: self.find_public_folder(project_id),
            Folder(
                project_id=project_id,
                name=PUBLIC_FOLDER_NAME,
                type=FolderType.PUBLIC.value,
                owner_id=user_id,
                visibility=FolderVisibility.SHARED.value,
            ),
        )
        await self.db.commit()
        return SystemFolders(personal=personal, public=public)

    # ─── Access evaluation ──────────────────────────────

    async def _org_role(self, project_id: int, user_id: int) -> MemberRole | None:
        result = await self.db.execute(
            select(Member.role)
            .join(Project, Project.organization_id == Member.organization_id)
            .where(Project.id == project_id, Member.user_id == user_id)
        )
        role = result.scalars().first()
        return MemberRole(role) if role else None

    async def _grant(self, folder_id: int, user_id: int) -> FolderAccess | None:
        result = await self.db.execute(
            select(FolderAccess).where(
                FolderAccess.folder_id == folder_id,
                FolderAccess.user_id == user_id,
            )
        )
        return result.scalars().first()

    async def access_level(self, folder: Folder, user_id: int) -> AccessLevel | None:
        """Evaluate what `user_id` may do with `folder`. Non-members get nothing."""
        org_role = await self._org_role(folder.project_id, user_id)
        if org_role is None:
            return None

        folder_type = FolderType(folder.type)
        if folder_type is FolderType.PERSONAL:
            return AccessLevel.WRITE if folder.owner_id == user_id else None
        if folder_type is FolderType.PUBLIC:
            if org_role in (MemberRole.OWNER, MemberRole.ADMIN):
                return AccessLevel.WRITE
            return AccessLevel.READ

        if folder.owner_id == user_id:
            return AccessLevel.WRITE
        grant = await self._grant(folder.id, user_id)
        if grant is not None:
            if grant.role == FolderAccessRole.EDITOR.value:
                return AccessLevel.WRITE
            return AccessLevel.READ
        if folder.visibility == FolderVisibility.SHARED.value:
            return AccessLevel.READ
        return None

    async def can_read(self, folder: Folder, user_id: int) -> bool:
        return await self.access_level(folder, user_id) is not None

    async def can_write(self, folder: Folder, user_id: int) -> bool:
        return await self.access_level(folder, user_id) is AccessLevel.WRITE

    # ─── Listing ────────────────────────────────────────

    async def list_folders(self, project_id: int, user_id: int) -> list[Folder]:
        """Folders visible to the user, system folders bootstrapped first."""
        await self.ensure_system_folders(project_id, user_id)
        result = await self.db.execute(
            select(Folder)
            .where(Folder.project_id == project_id)
            .order_by(Folder.sort_order, Folder.id)
        )
        visible = []
        for folder in result.scalars().all():
            if await self.can_read(folder, user_id):
                visible.append(folder)
        return visible

    # ─── Custom folder CRUD ─────────────────────────────

    def _require_custom(self, folder: Folder, action: str) -> None:
        if FolderType(folder.type).is_system:
            raise InvariantViolationError(f"Cannot {action} a system folder")

    async def create_folder(
        self,
        project_id: int,
        user_id: int,
        name: str,
        visibility: str | FolderVisibility = FolderVisibility.PRIVATE,
    ) -> Folder:
        """Create a custom folder; the creator gets an editor grant."""
        visibility = _parse(FolderVisibility, visibility, "visibility")
        project = await self.db.get(Project, project_id)
        if not project:
            raise NotFoundError(f"Project {project_id} not found")

        folder = Folder(
            project_id=project_id,
            name=name,
            type=FolderType.CUSTOM.value,
            owner_id=user_id,
            visibility=visibility.value,
            sort_order=await self._next_sort_order(project_id),
        )
        self.db.add(folder)
        await self.db.flush()
        self.db.add(
            FolderAccess(
                folder_id=folder.id,
                user_id=user_id,
                role=FolderAccessRole.EDITOR.value,
            )
        )
        await self.db.flush()

        await self.events.append(
            stream_id=f"project:{project_id}",
            event_type=FOLDER_CREATED,
            data={"folder_id": folder.id, "type": folder.type, "owner_id": user_id},
        )
        await self.db.commit()
        logger.info("folder.created", project_id=project_id, folder_id=folder.id)
        return folder

    async def rename_folder(self, folder_id: int, name: str) -> Folder:
        folder = await self.require_folder(folder_id)
        self._require_custom(folder, "rename")
        old_name = folder.name
        folder.name = name
        await self.events.append(
            stream_id=f"project:{folder.project_id}",
            event_type=FOLDER_RENAMED,
            data={"folder_id": folder_id, "from": old_name, "to": name},
        )
        await self.db.commit()
        return folder

    async def set_visibility(
        self, folder_id: int, visibility: str | FolderVisibility
    ) -> Folder:
        visibility = _parse(FolderVisibility, visibility, "visibility")
        folder = await self.require_folder(folder_id)
        self._require_custom(folder, "change visibility of")
        folder.visibility = visibility.value
        await self.events.append(
            stream_id=f"project:{folder.project_id}",
            event_type=FOLDER_VISIBILITY_CHANGED,
            data={"folder_id": folder_id, "visibility": visibility.value},
        )
        await self.db.commit()
        return folder

    async def delete_folder(self, folder_id: int) -> None:
        """Delete a custom folder. Grants cascade; its items become unfiled."""
        folder = await self.require_folder(folder_id)
        self._require_custom(folder, "delete")

        unfiled = 0
        for model in ITEM_MODELS.values():
            result = await self.db.execute(
                update(model)
                .where(model.folder_id == folder_id)
                .values(folder_id=None)
                .execution_options(synchronize_session=False)
            )
            unfiled += result.rowcount
        await self.db.execute(delete(FolderAccess).where(FolderAccess.folder_id == folder_id))
        await self.db.delete(folder)

        await self.events.append(
            stream_id=f"project:{folder.project_id}",
            event_type=FOLDER_DELETED,
            data={"folder_id": folder_id, "unfiled_items": unfiled},
        )
        await self.db.commit()
        logger.info("folder.deleted", folder_id=folder_id, unfiled_items=unfiled)

    async def reorder_folders(self, project_id: int, ordered_ids: list[int]) -> list[Folder]:
        """Rewrite sort_order contiguously from 0.

        Listed folders come first in the given order; the rest keep
        their relative order after them.
        """
        if len(set(ordered_ids)) != len(ordered_ids):
            raise InvalidValueError("Folder ids must be unique")

        result = await self.db.execute(
            select(Folder)
            .where(Folder.project_id == project_id)
            .order_by(Folder.sort_order, Folder.id)
        )
        folders = list(result.scalars().all())
        by_id = {f.id: f for f in folders}
        unknown = [fid for fid in ordered_ids if fid not in by_id]
        if unknown:
            raise InvalidValueError(
                f"Folders not in project {project_id}: {', '.join(map(str, unknown))}"
            )

        listed = set(ordered_ids)
        ordered = [by_id[fid] for fid in ordered_ids] + [
            f for f in folders if f.id not in listed
        ]
        for position, folder in enumerate(ordered):
            folder.sort_order = position

        await self.events.append(
            stream_id=f"project:{project_id}",
            event_type=FOLDERS_REORDERED,
            data={"order": [f.id for f in ordered]},
        )
        await self.db.commit()
        return ordered

    # ─── Grants ─────────────────────────────────────────

    async def get_folder_access(self, folder_id: int) -> list[FolderAccess]:
        result = await self.db.execute(
            select(FolderAccess)
            .where(FolderAccess.folder_id == folder_id)
            .order_by(FolderAccess.id)
        )
        return list(result.scalars().all())

    async def _require_grantee(self, folder: Folder, user_id: int) -> None:
        if await self._org_role(folder.project_id, user_id) is None:
            raise InvalidValueError(f"User {user_id} is not a member of this project")

    async def grant_access(
        self, folder_id: int, user_id: int, role: str | FolderAccessRole
    ) -> FolderAccess:
        """Give a user editor/viewer on a custom folder. Re-granting replaces the role."""
        role = _parse(FolderAccessRole, role, "role")
        folder = await self.require_folder(folder_id)
        self._require_custom(folder, "share")
        await self._require_grantee(folder, user_id)

        grant = await self._grant(folder_id, user_id)
        if grant is None:
            grant = FolderAccess(folder_id=folder_id, user_id=user_id, role=role.value)
            self.db.add(grant)
        else:
            grant.role = role.value
        await self.db.flush()

        await self.events.append(
            stream_id=f"project:{folder.project_id}",
            event_type=FOLDER_ACCESS_GRANTED,
            data={"folder_id": folder_id, "user_id": user_id, "role": role.value},
        )
        await self.db.commit()
        return grant

    async def revoke_access(self, folder_id: int, user_id: int) -> None:
        folder = await self.require_folder(folder_id)
        grant = await self._grant(folder_id, user_id)
        if grant is None:
            raise NotFoundError(f"User {user_id} has no access grant on folder {folder_id}")
        await self.db.delete(grant)
        await self.events.append(
            stream_id=f"project:{folder.project_id}",
            event_type=FOLDER_ACCESS_REVOKED,
            data={"folder_id": folder_id, "user_id": user_id},
        )
        await self.db.commit()

    async def set_access(
        self, folder_id: int, entries: Iterable[tuple[int, str | FolderAccessRole]]
    ) -> list[FolderAccess]:
        """Replace every grant on a custom folder with `entries`."""
        folder = await self.require_folder(folder_id)
        self._require_custom(folder, "share")

        parsed: dict[int, FolderAccessRole] = {}
        for user_id, role in entries:
            parsed[user_id] = _parse(FolderAccessRole, role, "role")
        for user_id in parsed:
            await self._require_grantee(folder, user_id)

        await self.db.execute(delete(FolderAccess).where(FolderAccess.folder_id == folder_id))
        grants = [
            FolderAccess(folder_id=folder_id, user_id=user_id, role=role.value)
            for user_id, role in parsed.items()
        ]
        self.db.add_all(grants)
        await self.db.flush()

        await self.events.append(
            stream_id=f"project:{folder.project_id}",
            event_type=FOLDER_ACCESS_GRANTED,
            data={
                "folder_id": folder_id,
                "grants": {str(uid): role.value for uid, role in parsed.items()},
                "replace": True,
            },
        )
        await self.db.commit()
        return grants

    # ─── Items ──────────────────────────────────────────

    async def get_item(self, item_type: str, item_id: int):
        model = item_model(item_type)
        item = await self.db.get(model, item_id)
        if not item:
            raise NotFoundError(f"{item_type.capitalize()} {item_id} not found")
        return item

    async def create_item(
        self,
        item_type: str,
        project_id: int,
        name: str,
        folder_id: Optional[int] = None,
    ):
        """Register a dashboard/thread/spreadsheet so it can be filed."""
        model = item_model(item_type)
        if folder_id is not None:
            folder = await self.require_folder(folder_id)
            if folder.project_id != project_id:
                raise InvalidValueError("Folder belongs to a different project")
        item = model(project_id=project_id, name=name, folder_id=folder_id)
        self.db.add(item)
        await self.db.flush()
        await self.db.commit()
        return item

    async def move_item_to_folder(
        self, item_type: str, item_id: int, folder_id: Optional[int]
    ):
        """File an item into a folder, or unfile it with folder_id=None."""
        item = await self.get_item(item_type, item_id)
        if folder_id is not None:
            folder = await self.require_folder(folder_id)
            if folder.project_id != item.project_id:
                raise InvalidValueError("Folder and item belong to different projects")

        previous = item.folder_id
        item.folder_id = folder_id
        await self.events.append(
            stream_id=f"project:{item.project_id}",
            event_type=ITEM_MOVED,
            data={
                "item_type": item_type,
                "item_id": item_id,
                "from": previous,
                "to": folder_id,
            },
        )
        await self.db.commit()
        logger.info(
            "item.moved", item_type=item_type, item_id=item_id, folder_id=folder_id
        )
        return item


def _parse(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidValueError(f"Invalid {field}: {value}")

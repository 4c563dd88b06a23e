"""Folder access controller tests.

Learn: Tests cover:
1. System folder bootstrap — idempotent, and convergent when two
   requests race (simulated by hiding the first lookup, and for real
   with concurrent sessions on a shared SQLite file)
2. Access levels for personal/public/custom folders and grants
3. Custom folder CRUD, ordering and item filing
"""

import asyncio

import pytest
from sqlalchemy import select

from conftest import PASSWORD, unique_email

from accesscore.db.engine import build_engine, build_session_factory
from accesscore.db.models import Base, Dashboard, Folder
from accesscore.errors import InvalidValueError, InvariantViolationError
from accesscore.services.credential_service import CredentialService
from accesscore.services.folder_service import AccessLevel, FolderService
from accesscore.services.tenancy_service import TenancyService


# ═══════════════════════════════════════════════════════════
# System folders
# ═══════════════════════════════════════════════════════════


async def test_ensure_system_folders_is_idempotent(db_session, org_setup):
    svc = FolderService(db_session)
    pid, uid = org_setup["project_id"], org_setup["member_id"]

    first = await svc.ensure_system_folders(pid, uid)
    second = await svc.ensure_system_folders(pid, uid)
    assert first.personal.id == second.personal.id
    assert first.public.id == second.public.id
    assert first.personal.type == "personal"
    assert first.personal.owner_id == uid
    assert first.public.type == "public"


async def test_each_user_gets_own_personal_folder_but_shares_public(db_session, org_setup):
    svc = FolderService(db_session)
    pid = org_setup["project_id"]
    a = await svc.ensure_system_folders(pid, org_setup["member_id"])
    b = await svc.ensure_system_folders(pid, org_setup["admin_id"])
    assert a.personal.id != b.personal.id
    assert a.public.id == b.public.id


async def test_bootstrap_converges_when_insert_loses_race(db_session, org_setup, monkeypatch):
    """The other writer created the folder between our lookup and our insert."""
    pid, uid = org_setup["project_id"], org_setup["member_id"]
    existing = await FolderService(db_session).ensure_system_folders(pid, uid)
    personal_id = existing.personal.id

    svc = FolderService(db_session)
    original = svc.find_personal_folder
    calls = {"n": 0}

    async def stale_first_lookup(project_id, owner_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await original(project_id, owner_id)

    monkeypatch.setattr(svc, "find_personal_folder", stale_first_lookup)

    again = await svc.ensure_system_folders(pid, uid)
    assert again.personal.id == personal_id
    assert calls["n"] == 2

    rows = (await db_session.execute(
        select(Folder.id).where(
            Folder.project_id == pid, Folder.type == "personal", Folder.owner_id == uid
        )
    )).all()
    assert len(rows) == 1


async def test_concurrent_bootstrap_on_shared_database(tmp_path):
    """Eight sessions bootstrap the same user at once against one SQLite file.

    Each session holds its own connection, so the read-then-insert
    transactions genuinely overlap. All of them must converge on the same
    two folders instead of failing on the database lock.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'bootstrap.sqlite'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = build_session_factory(engine)

    async with factory() as session:
        owner = await CredentialService(session).create_user(unique_email("race"), PASSWORD)
        uid = owner.id
        tenancy = TenancyService(session)
        org = await tenancy.create_organization("Race", "race", uid)
        pid = (await tenancy.create_project(org.id, "Shared")).id

    async def bootstrap():
        async with factory() as session:
            folders = await FolderService(session).ensure_system_folders(pid, uid)
            return folders.personal.id, folders.public.id

    try:
        results = await asyncio.gather(*(bootstrap() for _ in range(8)))
        assert len(set(results)) == 1

        async with factory() as session:
            rows = (await session.execute(
                select(Folder.type).where(Folder.project_id == pid)
            )).scalars().all()
        assert sorted(rows) == ["personal", "public"]
    finally:
        await engine.dispose()


# ═══════════════════════════════════════════════════════════
# Access levels
# ═══════════════════════════════════════════════════════════


async def test_personal_folder_is_owner_only(db_session, org_setup):
    svc = FolderService(db_session)
    folders = await svc.ensure_system_folders(org_setup["project_id"], org_setup["member_id"])
    personal = folders.personal

    assert await svc.access_level(personal, org_setup["member_id"]) is AccessLevel.WRITE
    assert await svc.access_level(personal, org_setup["owner_id"]) is None
    assert await svc.access_level(personal, org_setup["outsider_id"]) is None


async def test_public_folder_read_for_members_write_for_admins(db_session, org_setup):
    svc = FolderService(db_session)
    public = (await svc.ensure_system_folders(org_setup["project_id"], org_setup["member_id"])).public

    assert await svc.access_level(public, org_setup["member_id"]) is AccessLevel.READ
    assert await svc.access_level(public, org_setup["admin_id"]) is AccessLevel.WRITE
    assert await svc.access_level(public, org_setup["owner_id"]) is AccessLevel.WRITE
    assert await svc.access_level(public, org_setup["outsider_id"]) is None


async def test_custom_folder_grants_and_visibility(db_session, org_setup):
    svc = FolderService(db_session)
    folder = await svc.create_folder(org_setup["project_id"], org_setup["member_id"], "Reports")
    folder_id = folder.id
    admin = org_setup["admin_id"]

    assert await svc.access_level(folder, org_setup["member_id"]) is AccessLevel.WRITE
    assert await svc.access_level(folder, admin) is None

    await svc.grant_access(folder_id, admin, "viewer")
    assert await svc.access_level(folder, admin) is AccessLevel.READ
    await svc.grant_access(folder_id, admin, "editor")
    assert await svc.access_level(folder, admin) is AccessLevel.WRITE
    await svc.revoke_access(folder_id, admin)
    assert await svc.access_level(folder, admin) is None

    await svc.set_visibility(folder_id, "shared")
    assert await svc.access_level(folder, admin) is AccessLevel.READ
    assert await svc.access_level(folder, org_setup["outsider_id"]) is None


async def test_set_access_replaces_all_grants(db_session, org_setup):
    svc = FolderService(db_session)
    folder = await svc.create_folder(org_setup["project_id"], org_setup["owner_id"], "Board")
    folder_id = folder.id

    await svc.set_access(folder_id, [(org_setup["admin_id"], "editor"), (org_setup["member_id"], "viewer")])
    await svc.set_access(folder_id, [(org_setup["member_id"], "editor")])
    grants = {(g.user_id, g.role) for g in await svc.get_folder_access(folder_id)}
    assert grants == {(org_setup["member_id"], "editor")}


async def test_grants_on_system_folders_refused(db_session, org_setup):
    svc = FolderService(db_session)
    public = (await svc.ensure_system_folders(org_setup["project_id"], org_setup["owner_id"])).public
    with pytest.raises(InvariantViolationError):
        await svc.grant_access(public.id, org_setup["member_id"], "editor")


async def test_grant_to_non_member_refused(db_session, org_setup):
    svc = FolderService(db_session)
    folder = await svc.create_folder(org_setup["project_id"], org_setup["owner_id"], "Private")
    with pytest.raises(InvalidValueError):
        await svc.grant_access(folder.id, org_setup["outsider_id"], "viewer")


async def test_list_folders_filters_by_access(db_session, org_setup):
    svc = FolderService(db_session)
    pid = org_setup["project_id"]
    await svc.create_folder(pid, org_setup["owner_id"], "Owner private")
    await svc.create_folder(pid, org_setup["owner_id"], "Everyone", visibility="shared")

    names = [f.name for f in await svc.list_folders(pid, org_setup["member_id"])]
    assert "Owner private" not in names
    assert {"Personal Folder", "Public Folder", "Everyone"} <= set(names)


# ═══════════════════════════════════════════════════════════
# Custom folder CRUD and ordering
# ═══════════════════════════════════════════════════════════


async def test_system_folders_cannot_be_renamed_or_deleted(db_session, org_setup):
    svc = FolderService(db_session)
    folders = await svc.ensure_system_folders(org_setup["project_id"], org_setup["owner_id"])
    personal_id, public_id = folders.personal.id, folders.public.id
    with pytest.raises(InvariantViolationError):
        await svc.rename_folder(personal_id, "Mine")
    with pytest.raises(InvariantViolationError):
        await svc.delete_folder(public_id)


async def test_new_folders_append_to_sort_order(db_session, org_setup):
    svc = FolderService(db_session)
    pid = org_setup["project_id"]
    await svc.ensure_system_folders(pid, org_setup["owner_id"])
    a = await svc.create_folder(pid, org_setup["owner_id"], "A")
    b = await svc.create_folder(pid, org_setup["owner_id"], "B")
    assert b.sort_order == a.sort_order + 1


async def test_reorder_folders(db_session, org_setup):
    svc = FolderService(db_session)
    pid, uid = org_setup["project_id"], org_setup["owner_id"]
    a = await svc.create_folder(pid, uid, "A")
    b = await svc.create_folder(pid, uid, "B")
    c = await svc.create_folder(pid, uid, "C")

    ordered = await svc.reorder_folders(pid, [c.id, a.id])
    assert [f.name for f in ordered] == ["C", "A", "B"]
    assert [f.sort_order for f in ordered] == [0, 1, 2]

    with pytest.raises(InvalidValueError):
        await svc.reorder_folders(pid, [a.id, a.id])
    with pytest.raises(InvalidValueError):
        await svc.reorder_folders(pid, [999999])


async def test_delete_folder_unfiles_items(db_session, org_setup):
    svc = FolderService(db_session)
    pid, uid = org_setup["project_id"], org_setup["owner_id"]
    folder = await svc.create_folder(pid, uid, "Doomed")
    dashboard = await svc.create_item("dashboard", pid, "Revenue", folder_id=folder.id)
    dashboard_id = dashboard.id

    await svc.delete_folder(folder.id)
    db_session.expire_all()
    refreshed = await db_session.get(Dashboard, dashboard_id)
    assert refreshed.folder_id is None


# ═══════════════════════════════════════════════════════════
# Item filing
# ═══════════════════════════════════════════════════════════


async def test_move_item_between_folders(db_session, org_setup):
    svc = FolderService(db_session)
    pid, uid = org_setup["project_id"], org_setup["owner_id"]
    folder = await svc.create_folder(pid, uid, "Threads")
    thread = await svc.create_item("thread", pid, "Q3 questions")

    moved = await svc.move_item_to_folder("thread", thread.id, folder.id)
    assert moved.folder_id == folder.id
    unfiled = await svc.move_item_to_folder("thread", thread.id, None)
    assert unfiled.folder_id is None


async def test_move_item_across_projects_refused(db_session, org_setup):
    svc = FolderService(db_session)
    other = await TenancyService(db_session).create_project(org_setup["org_id"], "Other")
    folder = await svc.create_folder(other.id, org_setup["owner_id"], "Elsewhere")
    sheet = await svc.create_item("spreadsheet", org_setup["project_id"], "Budget")
    with pytest.raises(InvalidValueError):
        await svc.move_item_to_folder("spreadsheet", sheet.id, folder.id)


async def test_unknown_item_type(db_session, org_setup):
    with pytest.raises(InvalidValueError):
        await FolderService(db_session).get_item("notebook", 1)

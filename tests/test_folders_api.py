"""Folder API tests.

Learn: Listing a project's folders bootstraps the caller's personal
folder and the shared public folder, then every mutation is gated on
folder access. System folders answer 409 to rename/delete/sharing.
"""

import pytest

from accesscore.services.folder_service import FolderService


async def _folders(client, project_id, headers):
    r = await client.get(f"/api/v1/projects/{project_id}/folders", headers=headers)
    assert r.status_code == 200, r.text
    return {f["name"]: f for f in r.json()}


# ═══════════════════════════════════════════════════════════
# Listing and bootstrap
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_listing_bootstraps_system_folders(client, org_setup, login):
    pid = org_setup["project_id"]
    member = await login(org_setup["emails"]["member"])

    folders = await _folders(client, pid, member)
    assert folders["Personal Folder"]["type"] == "personal"
    assert folders["Personal Folder"]["owner_id"] == org_setup["member_id"]
    assert folders["Public Folder"]["type"] == "public"

    again = await _folders(client, pid, member)
    assert again["Personal Folder"]["id"] == folders["Personal Folder"]["id"]


@pytest.mark.asyncio
async def test_outsider_cannot_list(client, org_setup, login):
    outsider = await login(org_setup["emails"]["outsider"])
    r = await client.get(f"/api/v1/projects/{org_setup['project_id']}/folders", headers=outsider)
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_private_folder_hidden_until_shared(client, org_setup, login):
    pid = org_setup["project_id"]
    owner = await login(org_setup["emails"]["owner"])
    member = await login(org_setup["emails"]["member"])

    created = (await client.post(
        f"/api/v1/projects/{pid}/folders", json={"name": "Board"}, headers=owner
    )).json()
    assert created["visibility"] == "private"
    assert "Board" not in await _folders(client, pid, member)

    r = await client.patch(
        f"/api/v1/folders/{created['id']}", json={"visibility": "shared"}, headers=owner
    )
    assert r.status_code == 200
    assert "Board" in await _folders(client, pid, member)

    # Shared means readable, not writable
    r = await client.patch(f"/api/v1/folders/{created['id']}", json={"name": "Mine"}, headers=member)
    assert r.status_code == 403


# ═══════════════════════════════════════════════════════════
# System folder rules
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_system_folders_refuse_changes(client, org_setup, login):
    owner = await login(org_setup["emails"]["owner"])
    folders = await _folders(client, org_setup["project_id"], owner)
    personal = folders["Personal Folder"]["id"]
    public = folders["Public Folder"]["id"]

    assert (await client.patch(
        f"/api/v1/folders/{personal}", json={"name": "Renamed"}, headers=owner
    )).status_code == 409
    assert (await client.delete(f"/api/v1/folders/{public}", headers=owner)).status_code == 409
    assert (await client.put(
        f"/api/v1/folders/{public}/access",
        json={"entries": [{"user_id": org_setup["member_id"], "role": "editor"}]},
        headers=owner,
    )).status_code == 409


@pytest.mark.asyncio
async def test_member_cannot_write_public_folder(client, org_setup, login):
    member = await login(org_setup["emails"]["member"])
    public = (await _folders(client, org_setup["project_id"], member))["Public Folder"]["id"]
    r = await client.delete(f"/api/v1/folders/{public}", headers=member)
    assert r.status_code == 403


# ═══════════════════════════════════════════════════════════
# Grants
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_set_and_revoke_access(client, org_setup, login):
    pid = org_setup["project_id"]
    owner = await login(org_setup["emails"]["owner"])
    member = await login(org_setup["emails"]["member"])
    folder_id = (await client.post(
        f"/api/v1/projects/{pid}/folders", json={"name": "Ops"}, headers=owner
    )).json()["id"]

    r = await client.put(
        f"/api/v1/folders/{folder_id}/access",
        json={"entries": [{"user_id": org_setup["member_id"], "role": "editor"}]},
        headers=owner,
    )
    assert r.status_code == 200
    assert [(g["user_id"], g["role"]) for g in r.json()] == [(org_setup["member_id"], "editor")]

    # The editor can now rename it
    r = await client.patch(f"/api/v1/folders/{folder_id}", json={"name": "Ops 2"}, headers=member)
    assert r.status_code == 200

    r = await client.delete(
        f"/api/v1/folders/{folder_id}/access/{org_setup['member_id']}", headers=owner
    )
    assert r.status_code == 204
    assert (await client.get(f"/api/v1/folders/{folder_id}/access", headers=member)).status_code == 403


@pytest.mark.asyncio
async def test_grant_to_outsider_is_422(client, org_setup, login):
    owner = await login(org_setup["emails"]["owner"])
    folder_id = (await client.post(
        f"/api/v1/projects/{org_setup['project_id']}/folders", json={"name": "X"}, headers=owner
    )).json()["id"]
    r = await client.put(
        f"/api/v1/folders/{folder_id}/access",
        json={"entries": [{"user_id": org_setup["outsider_id"], "role": "viewer"}]},
        headers=owner,
    )
    assert r.status_code == 422


# ═══════════════════════════════════════════════════════════
# Ordering and items
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_reorder(client, org_setup, login):
    pid = org_setup["project_id"]
    owner = await login(org_setup["emails"]["owner"])
    a = (await client.post(f"/api/v1/projects/{pid}/folders", json={"name": "A"}, headers=owner)).json()
    b = (await client.post(f"/api/v1/projects/{pid}/folders", json={"name": "B"}, headers=owner)).json()

    r = await client.post(
        f"/api/v1/projects/{pid}/folders/reorder",
        json={"folder_ids": [b["id"], a["id"]]},
        headers=owner,
    )
    assert r.status_code == 200
    assert [f["name"] for f in r.json()][:2] == ["B", "A"]


@pytest.mark.asyncio
async def test_move_item(client, db_session, org_setup, login):
    pid = org_setup["project_id"]
    owner = await login(org_setup["emails"]["owner"])
    member = await login(org_setup["emails"]["member"])
    item = await FolderService(db_session).create_item("dashboard", pid, "Revenue")
    item_id = item.id
    folder_id = (await client.post(
        f"/api/v1/projects/{pid}/folders", json={"name": "Finance"}, headers=owner
    )).json()["id"]

    body = {"item_type": "dashboard", "item_id": item_id, "folder_id": folder_id}
    # Member can write the unfiled item but not the owner's private folder
    r = await client.post(f"/api/v1/projects/{pid}/items/move", json=body, headers=member)
    assert r.status_code == 403

    r = await client.post(f"/api/v1/projects/{pid}/items/move", json=body, headers=owner)
    assert r.status_code == 200
    assert r.json()["folder_id"] == folder_id

    r = await client.post(
        f"/api/v1/projects/{pid}/items/move",
        json={"item_type": "dashboard", "item_id": item_id, "folder_id": None},
        headers=owner,
    )
    assert r.json()["folder_id"] is None


@pytest.mark.asyncio
async def test_delete_folder(client, org_setup, login):
    pid = org_setup["project_id"]
    owner = await login(org_setup["emails"]["owner"])
    folder_id = (await client.post(
        f"/api/v1/projects/{pid}/folders", json={"name": "Tmp"}, headers=owner
    )).json()["id"]
    assert (await client.delete(f"/api/v1/folders/{folder_id}", headers=owner)).status_code == 204
    assert "Tmp" not in await _folders(client, pid, owner)

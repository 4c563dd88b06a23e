"""RLS API tests — properties, values, context and policies over HTTP.

Learn: Tests cover:
1. Managers define properties; members can only read them
2. Value batches are all-or-nothing (422 leaves nothing behind) and
   only target existing members of the organization
3. /rls-context returns typed values, flags deferred defaults, and
   answers 422 with the full `missing` list
4. Keys need models:read / models:write and an explicit user_id
"""

import pytest


def _base(org_setup):
    return f"/api/v1/projects/{org_setup['project_id']}"


async def _define(client, org_setup, headers, **body):
    r = await client.post(f"{_base(org_setup)}/session-properties", json=body, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


# ═══════════════════════════════════════════════════════════
# Properties
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_property_crud(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    member = await login(org_setup["emails"]["member"])
    base = _base(org_setup)

    prop = await _define(client, org_setup, admin, name="region", type="string", required=True)
    assert prop["required"] is True

    r = await client.post(
        f"{base}/session-properties", json={"name": "region", "type": "number"}, headers=admin
    )
    assert r.status_code == 409

    listed = (await client.get(f"{base}/session-properties", headers=member)).json()
    assert [p["name"] for p in listed] == ["region"]

    r = await client.post(
        f"{base}/session-properties", json={"name": "tier", "type": "string"}, headers=member
    )
    assert r.status_code == 403

    r = await client.patch(
        f"{base}/session-properties/{prop['id']}", json={"required": False}, headers=admin
    )
    assert r.status_code == 200
    assert r.json()["required"] is False

    assert (await client.delete(f"{base}/session-properties/{prop['id']}", headers=admin)).status_code == 204
    assert (await client.get(f"{base}/session-properties", headers=member)).json() == []


@pytest.mark.asyncio
async def test_patch_clears_default_only_when_sent(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    base = _base(org_setup)
    prop = await _define(client, org_setup, admin, name="currency", type="string", default_expr="'USD'")

    r = await client.patch(f"{base}/session-properties/{prop['id']}", json={"name": "ccy"}, headers=admin)
    assert r.json()["default_expr"] == "'USD'"

    r = await client.patch(
        f"{base}/session-properties/{prop['id']}", json={"default_expr": None}, headers=admin
    )
    assert r.json()["default_expr"] is None


@pytest.mark.asyncio
async def test_bad_property_name_is_422(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    r = await client.post(
        f"{_base(org_setup)}/session-properties",
        json={"name": "has space", "type": "string"},
        headers=admin,
    )
    assert r.status_code == 422


# ═══════════════════════════════════════════════════════════
# Values and context
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_values_and_context(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    member = await login(org_setup["emails"]["member"])
    base = _base(org_setup)
    uid = org_setup["member_id"]

    region = await _define(client, org_setup, admin, name="region", type="string", required=True)
    limit = await _define(client, org_setup, admin, name="limit", type="number")
    await _define(client, org_setup, admin, name="currency", type="string", default_expr="'USD'")

    r = await client.put(
        f"{base}/session-property-values",
        json={"values": [
            {"user_id": uid, "session_property_id": region["id"], "value": "EMEA"},
            {"user_id": uid, "session_property_id": limit["id"], "value": "250"},
        ]},
        headers=admin,
    )
    assert r.status_code == 200
    assert {v["name"] for v in r.json()} == {"region", "limit"}

    mine = (await client.get(f"{base}/session-property-values", headers=member)).json()
    assert {v["name"]: v["value"] for v in mine} == {"region": "EMEA", "limit": "250"}

    ctx = await client.get(f"{base}/rls-context", headers=member)
    assert ctx.status_code == 200
    assert ctx.json()["user_id"] == uid
    assert ctx.json()["context"] == {
        "region": {"value": "EMEA", "deferred": False},
        "limit": {"value": 250, "deferred": False},
        "currency": {"value": "'USD'", "deferred": True},
    }


@pytest.mark.asyncio
async def test_batch_with_bad_value_writes_nothing(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    base = _base(org_setup)
    uid = org_setup["member_id"]
    region = await _define(client, org_setup, admin, name="region", type="string")
    active = await _define(client, org_setup, admin, name="active", type="boolean")

    r = await client.put(
        f"{base}/session-property-values",
        json={"values": [
            {"user_id": uid, "session_property_id": region["id"], "value": "APAC"},
            {"user_id": uid, "session_property_id": active["id"], "value": "maybe"},
        ]},
        headers=admin,
    )
    assert r.status_code == 422

    listed = await client.get(f"{base}/session-property-values?user_id={uid}", headers=admin)
    assert listed.json() == []


@pytest.mark.asyncio
async def test_values_for_unknown_or_foreign_users(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    base = _base(org_setup)
    region = await _define(client, org_setup, admin, name="region", type="string")

    r = await client.put(
        f"{base}/session-property-values",
        json={"values": [{"user_id": 999999, "session_property_id": region["id"], "value": "EMEA"}]},
        headers=admin,
    )
    assert r.status_code == 404

    r = await client.put(
        f"{base}/session-property-values",
        json={"values": [
            {"user_id": org_setup["member_id"], "session_property_id": region["id"], "value": "EMEA"},
            {"user_id": org_setup["outsider_id"], "session_property_id": region["id"], "value": "APAC"},
        ]},
        headers=admin,
    )
    assert r.status_code == 422

    listed = await client.get(
        f"{base}/session-property-values?user_id={org_setup['member_id']}", headers=admin
    )
    assert listed.json() == []


@pytest.mark.asyncio
async def test_missing_required_lists_every_name(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    member = await login(org_setup["emails"]["member"])
    await _define(client, org_setup, admin, name="region", type="string", required=True)
    await _define(client, org_setup, admin, name="team", type="string", required=True)

    r = await client.get(f"{_base(org_setup)}/rls-context", headers=member)
    assert r.status_code == 422
    assert sorted(r.json()["missing"]) == ["region", "team"]


@pytest.mark.asyncio
async def test_members_cannot_read_other_users_context(client, org_setup, login):
    member = await login(org_setup["emails"]["member"])
    admin = await login(org_setup["emails"]["admin"])
    base = _base(org_setup)

    r = await client.get(f"{base}/rls-context?user_id={org_setup['admin_id']}", headers=member)
    assert r.status_code == 403
    r = await client.get(f"{base}/rls-context?user_id={org_setup['member_id']}", headers=admin)
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_unassign_value(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    base = _base(org_setup)
    uid = org_setup["member_id"]
    prop = await _define(client, org_setup, admin, name="region", type="string")
    await client.put(
        f"{base}/session-property-values",
        json={"values": [{"user_id": uid, "session_property_id": prop["id"], "value": "EMEA"}]},
        headers=admin,
    )

    path = f"{base}/session-property-values/{uid}/{prop['id']}"
    assert (await client.delete(path, headers=admin)).status_code == 204
    assert (await client.delete(path, headers=admin)).status_code == 404


# ═══════════════════════════════════════════════════════════
# API keys
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_key_context_requires_user_id_and_permission(client, org_setup, login):
    owner = await login(org_setup["emails"]["owner"])
    base = _base(org_setup)
    r = await client.post(
        f"{base}/api-keys", json={"name": "engine", "permissions": ["models:read"]}, headers=owner
    )
    key = {"X-API-Key": r.json()["key"]}

    assert (await client.get(f"{base}/rls-context", headers=key)).status_code == 422
    r = await client.get(f"{base}/rls-context?user_id={org_setup['member_id']}", headers=key)
    assert r.status_code == 200
    assert r.json()["context"] == {}

    r = await client.post(
        f"{base}/session-properties", json={"name": "region", "type": "string"}, headers=key
    )
    assert r.status_code == 403


# ═══════════════════════════════════════════════════════════
# Policies
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_policy_crud(client, org_setup, login):
    admin = await login(org_setup["emails"]["admin"])
    member = await login(org_setup["emails"]["member"])
    base = _base(org_setup)
    region = await _define(client, org_setup, admin, name="region", type="string")

    r = await client.post(
        f"{base}/rls-policies",
        json={
            "name": "Region filter",
            "condition": "orders.region = {{region}}",
            "session_property_ids": [region["id"]],
            "model_ids": [3, 1],
        },
        headers=admin,
    )
    assert r.status_code == 201
    policy = r.json()
    assert policy["session_property_ids"] == [region["id"]]
    assert policy["model_ids"] == [1, 3]

    r = await client.get(f"{base}/rls-policies/{policy['id']}", headers=member)
    assert r.status_code == 200

    r = await client.patch(
        f"{base}/rls-policies/{policy['id']}", json={"condition": "1 = 1"}, headers=member
    )
    assert r.status_code == 403

    r = await client.patch(
        f"{base}/rls-policies/{policy['id']}", json={"model_ids": [5]}, headers=admin
    )
    assert r.json()["model_ids"] == [5]
    assert r.json()["session_property_ids"] == [region["id"]]

    assert (await client.delete(f"{base}/rls-policies/{policy['id']}", headers=admin)).status_code == 204
    assert (await client.get(f"{base}/rls-policies", headers=member)).json() == []

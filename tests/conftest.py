"""Test fixtures — a fresh in-memory SQLite database per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Env vars are set before anything from accesscore is imported, so the
   settings singleton sees the test database and cheap bcrypt rounds.
2. Each test gets its own engine on `sqlite+aiosqlite://` (one shared
   connection via StaticPool) with every table created from the models.
   Dropping the engine drops the database, so tests can't leak rows.
3. The HTTP client routes get_db to the test's session, so a test can
   set up rows through services and then hit the API (or the reverse).

Redis is never initialized here (ASGITransport skips the lifespan), so
the rate limiter steps aside.
"""

import os

os.environ.setdefault("ACCESSCORE_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ACCESSCORE_ENVIRONMENT", "test")
os.environ.setdefault("ACCESSCORE_BCRYPT_ROUNDS", "4")

import uuid  # noqa: E402

import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from accesscore.db.engine import build_engine, build_session_factory, get_db  # noqa: E402
from accesscore.db.models import Base  # noqa: E402
from accesscore.main import app  # noqa: E402
from accesscore.services.credential_service import CredentialService  # noqa: E402
from accesscore.services.tenancy_service import TenancyService  # noqa: E402

TEST_DB_URL = "sqlite+aiosqlite://"
PASSWORD = "correct-horse-battery"


@pytest_asyncio.fixture()
async def engine():
    engine = build_engine(TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(engine):
    """Per-test session. Services commit for real; the DB dies with the engine."""
    async with build_session_factory(engine)() as session:
        yield session


@pytest_asyncio.fixture()
async def client(db_session):
    """HTTP client with get_db pointed at the test session. Auth is real."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ─── Data helpers ──────────────────────────────────────────


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}@example.com"


@pytest_asyncio.fixture()
async def make_user(db_session):
    """Factory: create a user through the service, return it."""

    async def _make(email: str | None = None, password: str = PASSWORD, name: str | None = None):
        return await CredentialService(db_session).create_user(
            email or unique_email(), password, name
        )

    return _make


@pytest_asyncio.fixture()
async def org_setup(db_session, make_user):
    """An organization with an owner, an admin and a plain member, plus one project.

    Returns plain ids so tests never touch possibly-expired ORM objects.
    """
    tenancy = TenancyService(db_session)
    owner = await make_user(name="Owner")
    admin = await make_user(name="Admin")
    member = await make_user(name="Member")
    outsider = await make_user(name="Outsider")

    org = await tenancy.create_organization("Acme", f"acme-{uuid.uuid4().hex[:6]}", owner.id)
    for user, role in ((admin, "admin"), (member, "member")):
        inv = await tenancy.invite_member(org.id, user.email, role, owner.id)
        await tenancy.accept_invitation(inv.token, user.id)
    project = await tenancy.create_project(org.id, "Analytics")

    return {
        "org_id": org.id,
        "project_id": project.id,
        "owner_id": owner.id,
        "admin_id": admin.id,
        "member_id": member.id,
        "outsider_id": outsider.id,
        "emails": {
            "owner": owner.email,
            "admin": admin.email,
            "member": member.email,
            "outsider": outsider.email,
        },
    }


@pytest_asyncio.fixture()
async def login(client):
    """Factory: log in over HTTP and return Authorization headers."""

    async def _login(email: str, password: str = PASSWORD) -> dict:
        r = await client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['token']}"}

    return _login


@pytest_asyncio.fixture()
async def signup(client):
    """Factory: sign up over HTTP; returns the response body plus headers."""

    async def _signup(email: str | None = None, password: str = PASSWORD, display_name: str | None = None) -> dict:
        body = {"email": email or unique_email(), "password": password}
        if display_name:
            body["display_name"] = display_name
        r = await client.post("/api/v1/auth/signup", json=body)
        assert r.status_code == 201, r.text
        data = r.json()
        data["headers"] = {"Authorization": f"Bearer {data['token']}"}
        return data

    return _signup

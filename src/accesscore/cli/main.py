"""AccessCore admin CLI — run the server and manage the identity store.

Usage:
    accesscore serve                               # Run the API with uvicorn
    accesscore init-db                             # Create every table
    accesscore create-user ana@example.com         # Prompts for a password
    accesscore disable-user ana@example.com        # Block login, sessions and keys
    accesscore create-org "Acme" acme ana@example.com
    accesscore sweep-sessions                      # Delete expired sessions
    accesscore health                              # Ask a running server

Every database command takes --database-url (or ACCESSCORE_DATABASE_URL).
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from accesscore import __version__
from accesscore.config import settings
from accesscore.errors import AccessCoreError

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"

database_url_option = click.option(
    "--database-url",
    envvar="ACCESSCORE_DATABASE_URL",
    default=lambda: settings.database_url,
    show_default="settings.database_url",
    help="SQLAlchemy async database URL",
)


def _api_url() -> str:
    return os.environ.get("ACCESSCORE_API_URL", DEFAULT_API_URL).rstrip("/")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an async test) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


async def _with_session(database_url: str, fn):
    """Open an engine for one command, hand fn a session, dispose after."""
    from accesscore.db.engine import build_engine, build_session_factory

    engine = build_engine(database_url)
    try:
        async with build_session_factory(engine)() as session:
            return await fn(session)
    finally:
        await engine.dispose()


def _fail(message: str):
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


def _call(database_url: str, fn):
    """Run fn(session) and turn domain errors into a red message + exit 1."""
    try:
        return _run(_with_session(database_url, fn))
    except AccessCoreError as e:
        _fail(str(e))


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="accesscore")
def main():
    """AccessCore — users, organizations, API keys and access control."""


# ---------------------------------------------------------------------------
# accesscore serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=lambda: settings.host, show_default="settings.host")
@click.option("--port", type=int, default=lambda: settings.port, show_default="settings.port")
@click.option("--reload", is_flag=True, help="Restart on code changes")
def serve(host: str, port: int, reload: bool):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("accesscore.main:app", host=host, port=port, reload=reload)


# ---------------------------------------------------------------------------
# accesscore init-db
# ---------------------------------------------------------------------------


@main.command("init-db")
@database_url_option
def init_db(database_url: str):
    """Create all tables directly from the models (no migrations).

    Meant for local SQLite databases; use `alembic upgrade head` for
    PostgreSQL deployments.
    """
    _run(_init_db_impl(database_url))
    click.secho("Database initialized.", fg="green")


async def _init_db_impl(database_url: str):
    from accesscore.db.engine import build_engine
    from accesscore.db.models import Base

    engine = build_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@main.command("create-user")
@click.argument("email")
@click.option("--name", "display_name", help="Display name")
@click.password_option(help="Password (prompted if omitted)")
@database_url_option
def create_user(email: str, display_name: Optional[str], password: str, database_url: str):
    """Create a user account."""
    from accesscore.services.credential_service import CredentialService

    async def fn(session):
        return await CredentialService(session).create_user(email, password, display_name)

    user = _call(database_url, fn)
    click.secho(f"Created user #{user.id} <{user.email}>", fg="green")


@main.command("disable-user")
@click.argument("email")
@click.option("--enable", is_flag=True, help="Re-enable instead of disabling")
@database_url_option
def disable_user(email: str, enable: bool, database_url: str):
    """Disable (or re-enable) a user.

    A disabled user cannot log in; their sessions and the API keys they
    created stop authenticating.
    """
    from accesscore.services.credential_service import CredentialService

    async def fn(session):
        svc = CredentialService(session)
        user = await svc.find_by_email(email)
        if user is None:
            _fail(f"No user with email {email}")
        return await svc.set_active(user.id, enable)

    user = _call(database_url, fn)
    state = "enabled" if user.is_active else "disabled"
    click.secho(f"User #{user.id} <{user.email}> {state}", fg="green" if enable else "yellow")


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


@main.command("create-org")
@click.argument("display_name")
@click.argument("slug")
@click.argument("owner_email")
@database_url_option
def create_org(display_name: str, slug: str, owner_email: str, database_url: str):
    """Create an organization owned by an existing user."""
    from accesscore.services.credential_service import CredentialService
    from accesscore.services.tenancy_service import TenancyService

    async def fn(session):
        owner = await CredentialService(session).find_by_email(owner_email)
        if owner is None:
            _fail(f"No user with email {owner_email}")
        return await TenancyService(session).create_organization(display_name, slug, owner.id)

    org = _call(database_url, fn)
    click.secho(f"Created organization #{org.id} ({org.slug})", fg="green")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@main.command("sweep-sessions")
@database_url_option
def sweep_sessions(database_url: str):
    """Delete expired login sessions."""
    from accesscore.services.credential_service import CredentialService

    async def fn(session):
        return await CredentialService(session).delete_expired_sessions()

    removed = _call(database_url, fn)
    click.echo(f"Removed {removed} expired session(s).")


@main.command()
@click.option("--api-url", default=_api_url, show_default=DEFAULT_API_URL)
def health(api_url: str):
    """Query /api/v1/health on a running server."""
    _run(_health_impl(api_url))


async def _health_impl(api_url: str):
    async with httpx.AsyncClient(base_url=api_url, timeout=10.0) as c:
        try:
            r = await c.get("/api/v1/health")
            r.raise_for_status()
        except httpx.HTTPError as e:
            _fail(f"Health check failed: {e}")
        data = r.json()

    color = "green" if data.get("status") == "healthy" else "yellow"
    click.secho(data.get("status", "unknown"), fg=color, bold=True)
    click.echo(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()

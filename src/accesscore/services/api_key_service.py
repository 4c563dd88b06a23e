"""API key authority — issue, verify, revoke and list scoped keys.

Learn: One protocol, two scopes. ApiKeyAuthority is parameterized by a
KeyScope (tag + model + the column that holds the scope id):

    osk-<64 hex>   organization key  → OrgApiKey
    psk-<64 hex>   project key       → ProjectApiKey

Storage keeps only:
- key_prefix: "osk-" + the first N body chars, for display and to narrow
  the candidate lookup (never trusted to authorize)
- key_hash: SHA-256 of the full secret

Verification hashes the presented secret and compares it to each
candidate's hash with hmac.compare_digest. Unknown prefix, mismatch,
expired, revoked and disabled-creator all come back as None, so the
HTTP boundary can't tell them apart.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from accesscore.auth.tokens import (
    ORG_KEY_TAG,
    PROJECT_KEY_TAG,
    constant_time_equals,
    key_prefix,
    new_api_key_secret,
    sha256_hex,
)
from accesscore.config import settings
from accesscore.db.models import OrgApiKey, Project, ProjectApiKey, User, utcnow
from accesscore.errors import ConflictError, InvalidValueError, NotFoundError
from accesscore.events.store import EventStore
from accesscore.events.types import API_KEY_DELETED, API_KEY_ISSUED, API_KEY_REVOKED

logger = structlog.get_logger()

MASK = "************"

# ─── Permission vocabulary ──────────────────────────────

WILDCARD = "*"

PERMISSIONS = frozenset({
    WILDCARD,
    "projects:read",
    "projects:write",
    "ask:invoke",
    "models:read",
    "models:write",
    "threads:read",
    "threads:write",
    "folders:read",
    "folders:write",
    "dashboards:read",
    "dashboards:write",
    "spreadsheets:read",
    "spreadsheets:write",
})


def has_permission(granted: Optional[list[str]], required: str) -> bool:
    """None (no list) means unrestricted; "*" grants everything."""
    if granted is None:
        return True
    return WILDCARD in granted or required in granted


def validate_permissions(permissions: Optional[list[str]]) -> Optional[list[str]]:
    if permissions is None:
        return None
    unknown = sorted(set(permissions) - PERMISSIONS)
    if unknown:
        raise InvalidValueError(f"Unknown permissions: {', '.join(unknown)}")
    # De-duplicate, keep caller order
    return list(dict.fromkeys(permissions))


# ─── Scope definitions ──────────────────────────────────


@dataclass(frozen=True)
class KeyScope:
    name: str
    tag: str
    model: type
    scope_column: str


ORG_SCOPE = KeyScope("organization", ORG_KEY_TAG, OrgApiKey, "organization_id")
PROJECT_SCOPE = KeyScope("project", PROJECT_KEY_TAG, ProjectApiKey, "project_id")


@dataclass(frozen=True)
class VerifiedKey:
    """Detached snapshot of a key that passed verification."""

    scope: str
    key_id: int
    organization_id: int
    project_id: Optional[int]
    permissions: Optional[list[str]]
    created_by: int


@dataclass
class IssuedKey:
    """Result of issue(): the stored record plus the one-time plaintext secret."""

    record: OrgApiKey | ProjectApiKey
    secret: str


class ApiKeyAuthority:
    """Issue/verify/revoke keys for one scope."""

    def __init__(self, db: AsyncSession, scope: KeyScope):
        self.db = db
        self.scope = scope
        self.events = EventStore(db)

    @property
    def model(self):
        return self.scope.model

    def _scope_col(self):
        return getattr(self.model, self.scope.scope_column)

    # ─── Issue ──────────────────────────────────────────

    async def issue(
        self,
        scope_id: int,
        name: str,
        created_by: int,
        permissions: Optional[list[str]] = None,
        expires_at: Optional[datetime] = None,
    ) -> IssuedKey:
        """Create a key. The plaintext secret is returned here and never again."""
        permissions = validate_permissions(permissions)
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at is not None and expires_at <= utcnow():
            raise InvalidValueError("expires_at must be in the future")

        secret = new_api_key_secret(self.scope.tag)
        fields = {
            "name": name,
            "key_prefix": key_prefix(secret, self.scope.tag, settings.api_key_prefix_chars),
            "key_hash": sha256_hex(secret),
            "permissions": permissions,
            "expires_at": expires_at,
            "created_by": created_by,
            self.scope.scope_column: scope_id,
        }
        if self.scope is PROJECT_SCOPE:
            project = await self.db.get(Project, scope_id)
            if not project:
                raise NotFoundError(f"Project {scope_id} not found")
            fields["organization_id"] = project.organization_id

        record = self.model(**fields)
        self.db.add(record)
        await self.db.flush()

        await self.events.append(
            stream_id=f"{self.scope.name}:{scope_id}",
            event_type=API_KEY_ISSUED,
            data={
                "key_id": record.id,
                "prefix": record.key_prefix,
                "name": name,
                "created_by": created_by,
            },
        )
        await self.db.commit()
        logger.info(
            "api_key.issued",
            scope=self.scope.name,
            scope_id=scope_id,
            key_id=record.id,
            prefix=record.key_prefix,
        )
        return IssuedKey(record=record, secret=secret)

    # ─── Verify ─────────────────────────────────────────

    async def verify(
        self, presented: str, now: Optional[datetime] = None
    ) -> VerifiedKey | None:
        """Return a VerifiedKey for a valid secret, else None."""
        tag = self.scope.tag
        prefix_len = len(tag) + 1 + settings.api_key_prefix_chars
        if not presented or not presented.startswith(f"{tag}-") or len(presented) <= prefix_len:
            return None

        now = now or utcnow()
        presented_hash = sha256_hex(presented)
        result = await self.db.execute(
            select(self.model)
            .join(User, User.id == self.model.created_by)
            .where(
                self.model.key_prefix == presented[:prefix_len],
                self.model.revoked_at.is_(None),
                User.is_active.is_(True),
            )
        )

        match = None
        for candidate in result.scalars().all():
            if constant_time_equals(candidate.key_hash, presented_hash):
                match = candidate
        if match is None:
            return None
        if match.expires_at is not None and match.expires_at <= now:
            return None

        verified = VerifiedKey(
            scope=self.scope.name,
            key_id=match.id,
            organization_id=match.organization_id,
            project_id=getattr(match, "project_id", None),
            permissions=list(match.permissions) if match.permissions is not None else None,
            created_by=match.created_by,
        )
        await self._touch(match.id, now)
        return verified

    async def _touch(self, key_id: int, now: datetime) -> None:
        """Best-effort last_used_at update; never fails the caller."""
        try:
            record = await self.db.get(self.model, key_id)
            if record is not None:
                record.last_used_at = now
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("api_key.touch_failed", key_id=key_id, error=str(e))

    # ─── Revoke / delete ────────────────────────────────

    async def get(self, scope_id: int, key_id: int):
        """Fetch a key within its scope; a key from another scope reads as missing."""
        record = await self.db.get(self.model, key_id)
        if record is None or getattr(record, self.scope.scope_column) != scope_id:
            raise NotFoundError(f"API key {key_id} not found")
        return record

    async def revoke(self, scope_id: int, key_id: int):
        record = await self.get(scope_id, key_id)
        if record.revoked_at is not None:
            raise ConflictError("API key is already revoked")
        record.revoked_at = utcnow()
        await self.events.append(
            stream_id=f"{self.scope.name}:{scope_id}",
            event_type=API_KEY_REVOKED,
            data={"key_id": key_id, "prefix": record.key_prefix},
        )
        await self.db.commit()
        logger.info("api_key.revoked", scope=self.scope.name, key_id=key_id)
        return record

    async def delete(self, scope_id: int, key_id: int) -> None:
        record = await self.get(scope_id, key_id)
        prefix = record.key_prefix
        await self.db.delete(record)
        await self.events.append(
            stream_id=f"{self.scope.name}:{scope_id}",
            event_type=API_KEY_DELETED,
            data={"key_id": key_id, "prefix": prefix},
        )
        await self.db.commit()
        logger.info("api_key.deleted", scope=self.scope.name, key_id=key_id)

    # ─── Listing ────────────────────────────────────────

    async def list_keys(self, scope_id: int) -> list[tuple[object, str]]:
        """Keys in a scope with their creator's email, newest first."""
        result = await self.db.execute(
            select(self.model, User.email)
            .join(User, User.id == self.model.created_by)
            .where(self._scope_col() == scope_id)
            .order_by(self.model.id.desc())
        )
        return [(record, email) for record, email in result.all()]


def org_keys(db: AsyncSession) -> ApiKeyAuthority:
    return ApiKeyAuthority(db, ORG_SCOPE)


def project_keys(db: AsyncSession) -> ApiKeyAuthority:
    return ApiKeyAuthority(db, PROJECT_SCOPE)


def mask(prefix: str) -> str:
    return f"{prefix}{MASK}"

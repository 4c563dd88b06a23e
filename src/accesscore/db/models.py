"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Constraints and indexes are defined here and
Alembic's initial revision mirrors them.

Key concepts:
- Integer primary keys, issued monotonically by the database
- Generic JSON/Boolean/DateTime types so the same models run on
  PostgreSQL (production) and SQLite (tests)
- ON DELETE CASCADE for strictly-owned children (sessions, memberships,
  API keys, folder grants), SET NULL for soft links (inviter, folder_id on
  dashboards/threads/spreadsheets)
- Partial unique indexes make system-folder bootstrap race-safe
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite hands back naive values; we re-attach UTC on load so expiry
    comparisons in Python never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


# ─── Closed enumerations ────────────────────────────────────


class MemberRole(str, enum.Enum):
    """Organization roles.

    Closed set. "viewer" appears in old schema comments but not in the
    role set the product actually grants; it is not accepted here until
    product decides otherwise.
    """

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class FolderType(str, enum.Enum):
    PERSONAL = "personal"
    PUBLIC = "public"
    CUSTOM = "custom"

    @property
    def is_system(self) -> bool:
        return self is not FolderType.CUSTOM


class FolderVisibility(str, enum.Enum):
    PRIVATE = "private"
    SHARED = "shared"


class FolderAccessRole(str, enum.Enum):
    EDITOR = "editor"
    VIEWER = "viewer"


class PropertyType(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"


class KeyStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


# ══════════════════════════════════════════════════════════════
# Credential Store: users + sessions
# ══════════════════════════════════════════════════════════════


class User(TimestampMixin, Base):
    """A human user.

    Email is stored lowercased; uniqueness is therefore case-insensitive.
    is_active=False soft-disables the account: sessions and keys created
    by the user stop authenticating, rows are kept.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )


class UserSession(TimestampMixin, Base):
    """Opaque bearer session. Absolute expiry, no sliding refresh."""

    __tablename__ = "sessions"
    __table_args__ = (Index("idx_sessions_user", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


# ══════════════════════════════════════════════════════════════
# Tenancy Graph: organizations, members, invitations, projects
# ══════════════════════════════════════════════════════════════


class Organization(TimestampMixin, Base):
    """Multi-tenant root. Owns members, invitations, API keys, projects."""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)


class Member(TimestampMixin, Base):
    """Organization membership with a role.

    At most one row per (organization, user). The "at least one owner"
    rule is enforced by TenancyService, not here.
    """

    __tablename__ = "members"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_members_org_user"),
        Index("idx_members_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MemberRole.MEMBER.value
    )
    invited_by: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )


class Invitation(TimestampMixin, Base):
    """Single-use invite into an organization.

    Pending = accepted_at is NULL and expires_at is in the future.
    """

    __tablename__ = "invitations"
    __table_args__ = (Index("idx_invitations_org", "organization_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MemberRole.MEMBER.value
    )
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    # Inviter deletion keeps the invitation valid, only attribution is lost.
    invited_by: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    def is_pending(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.accepted_at is None and self.expires_at > now


class Project(TimestampMixin, Base):
    """Workspace inside an organization.

    Only the columns access control needs; everything else about a
    project lives elsewhere.
    """

    __tablename__ = "projects"
    __table_args__ = (Index("idx_projects_org", "organization_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)


# ══════════════════════════════════════════════════════════════
# API Key Authority
# ══════════════════════════════════════════════════════════════


class _ApiKeyColumns(TimestampMixin):
    """Columns shared by organization and project keys.

    Only the SHA-256 of the secret is stored. key_prefix narrows the
    candidate lookup and is shown in listings; it never authorizes.
    permissions NULL means unrestricted. revoked_at is a soft delete.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(32), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    permissions: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    @property
    def status(self) -> KeyStatus:
        if self.revoked_at is not None:
            return KeyStatus.REVOKED
        if self.expires_at is not None and self.expires_at <= utcnow():
            return KeyStatus.EXPIRED
        return KeyStatus.ACTIVE


class OrgApiKey(_ApiKeyColumns, Base):
    __tablename__ = "org_api_keys"
    __table_args__ = (
        Index("idx_org_api_keys_org", "organization_id"),
        Index("idx_org_api_keys_prefix", "key_prefix"),
    )

    organization_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    created_by: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )


class ProjectApiKey(_ApiKeyColumns, Base):
    """Project-scoped key. organization_id is denormalized for one-hop checks."""

    __tablename__ = "project_api_keys"
    __table_args__ = (
        Index("idx_project_api_keys_project", "project_id"),
        Index("idx_project_api_keys_prefix", "key_prefix"),
    )

    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    created_by: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )


# ══════════════════════════════════════════════════════════════
# Folder Access Controller
# ══════════════════════════════════════════════════════════════


class Folder(TimestampMixin, Base):
    """Folder grouping dashboards, threads and spreadsheets in a project.

    personal/public folders are system-managed: at most one personal
    folder per (project, owner) and one public folder per project,
    guaranteed by partial unique indexes.
    """

    __tablename__ = "folders"
    __table_args__ = (
        Index("idx_folders_project", "project_id"),
        Index(
            "uq_folders_personal_owner",
            "project_id",
            "owner_id",
            unique=True,
            postgresql_where=text("type = 'personal'"),
            sqlite_where=text("type = 'personal'"),
        ),
        Index(
            "uq_folders_public",
            "project_id",
            unique=True,
            postgresql_where=text("type = 'public'"),
            sqlite_where=text("type = 'public'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FolderType.CUSTOM.value
    )
    owner_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    visibility: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FolderVisibility.PRIVATE.value
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def folder_type(self) -> FolderType:
        return FolderType(self.type)


class FolderAccess(TimestampMixin, Base):
    """Explicit grant of editor/viewer on a folder, unique per (folder, user)."""

    __tablename__ = "folder_access"
    __table_args__ = (
        UniqueConstraint("folder_id", "user_id", name="uq_folder_access_folder_user"),
        Index("idx_folder_access_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    folder_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("folders.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)


class _FolderItemColumns(TimestampMixin):
    """Linkage columns for items that can be filed into folders."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Dashboard(_FolderItemColumns, Base):
    __tablename__ = "dashboards"

    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    folder_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True
    )


class Thread(_FolderItemColumns, Base):
    __tablename__ = "threads"

    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    folder_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True
    )


class Spreadsheet(_FolderItemColumns, Base):
    __tablename__ = "spreadsheets"

    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    folder_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True
    )


# ══════════════════════════════════════════════════════════════
# RLS Policy Resolver
# ══════════════════════════════════════════════════════════════


class SessionProperty(TimestampMixin, Base):
    """Named, typed per-project variable referenced by RLS conditions."""

    __tablename__ = "session_properties"
    __table_args__ = (
        UniqueConstraint("project_id", "name", name="uq_session_properties_project_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    default_expr: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class UserSessionPropertyValue(TimestampMixin, Base):
    """Value a user holds for one session property (canonical text form)."""

    __tablename__ = "user_session_property_values"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "session_property_id", name="uq_user_session_property_values"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    session_property_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("session_properties.id", ondelete="CASCADE"),
        nullable=False,
    )
    value: Mapped[str] = mapped_column(Text, nullable=False)


class RlsPolicy(TimestampMixin, Base):
    """Row filter condition, stored verbatim for the query engine."""

    __tablename__ = "rls_policies"
    __table_args__ = (Index("idx_rls_policies_project", "project_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    condition: Mapped[str] = mapped_column(Text, nullable=False)


class RlsPolicySessionProperty(Base):
    __tablename__ = "rls_policy_session_properties"
    __table_args__ = (
        UniqueConstraint(
            "rls_policy_id", "session_property_id", name="uq_rls_policy_session_property"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rls_policy_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rls_policies.id", ondelete="CASCADE"), nullable=False
    )
    session_property_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("session_properties.id", ondelete="CASCADE"),
        nullable=False,
    )


class RlsPolicyModel(Base):
    """Policy → semantic model link. Models live outside this service."""

    __tablename__ = "rls_policy_models"
    __table_args__ = (
        UniqueConstraint("rls_policy_id", "model_id", name="uq_rls_policy_model"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rls_policy_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rls_policies.id", ondelete="CASCADE"), nullable=False
    )
    model_id: Mapped[int] = mapped_column(Integer, nullable=False)


# ══════════════════════════════════════════════════════════════
# Audit trail
# ══════════════════════════════════════════════════════════════


class Event(Base):
    """Append-only audit event.

    Learn: Every identity/tenancy change (member invited, key revoked,
    folder shared, ...) is recorded as an immutable row. Payloads never
    contain secrets or session tokens.
    """

    __tablename__ = "events"
    __table_args__ = (Index("idx_events_stream", "stream_id", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    meta: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

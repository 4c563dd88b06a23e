"""Initial schema: identity, tenancy, API keys, folders, RLS, events

Learn: Mirrors db/models.py. The two partial unique indexes on folders
(one personal folder per project+owner, one public folder per project)
are what make concurrent system-folder bootstrap safe; they carry a
WHERE clause for both PostgreSQL and SQLite.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _fk(target: str, ondelete: str, nullable: bool = False, *, name: str) -> sa.Column:
    return sa.Column(
        name, sa.Integer(), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable
    )


def upgrade() -> None:
    # ─── Credential store ────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("avatar_url", sa.String(1024), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("users.id", "CASCADE", name="user_id"),
        sa.Column("token", sa.String(512), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_sessions_user", "sessions", ["user_id"])

    # ─── Tenancy ─────────────────────────────────────────
    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("logo_url", sa.String(1024), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "members",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("organizations.id", "CASCADE", name="organization_id"),
        _fk("users.id", "CASCADE", name="user_id"),
        sa.Column("role", sa.String(20), nullable=False),
        _fk("users.id", "SET NULL", nullable=True, name="invited_by"),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_members_org_user"),
    )
    op.create_index("idx_members_user", "members", ["user_id"])

    op.create_table(
        "invitations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("organizations.id", "CASCADE", name="organization_id"),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("token", sa.String(128), nullable=False, unique=True),
        _fk("users.id", "SET NULL", nullable=True, name="invited_by"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_invitations_org", "invitations", ["organization_id"])

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("organizations.id", "CASCADE", name="organization_id"),
        sa.Column("display_name", sa.String(255), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_projects_org", "projects", ["organization_id"])

    # ─── API keys ────────────────────────────────────────
    def key_columns() -> list[sa.Column]:
        return [
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("key_prefix", sa.String(32), nullable=False),
            sa.Column("key_hash", sa.String(255), nullable=False),
            sa.Column("permissions", sa.JSON(), nullable=True),
            sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
        ]

    op.create_table(
        "org_api_keys",
        *key_columns(),
        _fk("organizations.id", "CASCADE", name="organization_id"),
        _fk("users.id", "CASCADE", name="created_by"),
    )
    op.create_index("idx_org_api_keys_org", "org_api_keys", ["organization_id"])
    op.create_index("idx_org_api_keys_prefix", "org_api_keys", ["key_prefix"])

    op.create_table(
        "project_api_keys",
        *key_columns(),
        _fk("projects.id", "CASCADE", name="project_id"),
        _fk("organizations.id", "CASCADE", name="organization_id"),
        _fk("users.id", "CASCADE", name="created_by"),
    )
    op.create_index("idx_project_api_keys_project", "project_api_keys", ["project_id"])
    op.create_index("idx_project_api_keys_prefix", "project_api_keys", ["key_prefix"])

    # ─── Folders and folder items ────────────────────────
    op.create_table(
        "folders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("projects.id", "CASCADE", name="project_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        _fk("users.id", "SET NULL", nullable=True, name="owner_id"),
        sa.Column("visibility", sa.String(20), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_folders_project", "folders", ["project_id"])
    op.create_index(
        "uq_folders_personal_owner",
        "folders",
        ["project_id", "owner_id"],
        unique=True,
        postgresql_where=sa.text("type = 'personal'"),
        sqlite_where=sa.text("type = 'personal'"),
    )
    op.create_index(
        "uq_folders_public",
        "folders",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("type = 'public'"),
        sqlite_where=sa.text("type = 'public'"),
    )

    op.create_table(
        "folder_access",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("folders.id", "CASCADE", name="folder_id"),
        _fk("users.id", "CASCADE", name="user_id"),
        sa.Column("role", sa.String(20), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("folder_id", "user_id", name="uq_folder_access_folder_user"),
    )
    op.create_index("idx_folder_access_user", "folder_access", ["user_id"])

    for table in ("dashboards", "threads", "spreadsheets"):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False),
            _fk("projects.id", "CASCADE", name="project_id"),
            _fk("folders.id", "SET NULL", nullable=True, name="folder_id"),
            *_timestamps(),
        )

    # ─── RLS ─────────────────────────────────────────────
    op.create_table(
        "session_properties",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("projects.id", "CASCADE", name="project_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("required", sa.Boolean(), nullable=False),
        sa.Column("default_expr", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("project_id", "name", name="uq_session_properties_project_name"),
    )
    op.create_table(
        "user_session_property_values",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("users.id", "CASCADE", name="user_id"),
        _fk("session_properties.id", "CASCADE", name="session_property_id"),
        sa.Column("value", sa.Text(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "session_property_id", name="uq_user_session_property_values"
        ),
    )
    op.create_table(
        "rls_policies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("projects.id", "CASCADE", name="project_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("condition", sa.Text(), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_rls_policies_project", "rls_policies", ["project_id"])
    op.create_table(
        "rls_policy_session_properties",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("rls_policies.id", "CASCADE", name="rls_policy_id"),
        _fk("session_properties.id", "CASCADE", name="session_property_id"),
        sa.UniqueConstraint(
            "rls_policy_id", "session_property_id", name="uq_rls_policy_session_property"
        ),
    )
    op.create_table(
        "rls_policy_models",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _fk("rls_policies.id", "CASCADE", name="rls_policy_id"),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("rls_policy_id", "model_id", name="uq_rls_policy_model"),
    )

    # ─── Audit trail ─────────────────────────────────────
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stream_id", sa.String(255), nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_events_stream", "events", ["stream_id", "id"])


def downgrade() -> None:
    op.drop_table("events")
    op.drop_table("rls_policy_models")
    op.drop_table("rls_policy_session_properties")
    op.drop_table("rls_policies")
    op.drop_table("user_session_property_values")
    op.drop_table("session_properties")
    for table in ("spreadsheets", "threads", "dashboards"):
        op.drop_table(table)
    op.drop_table("folder_access")
    op.drop_table("folders")
    op.drop_table("project_api_keys")
    op.drop_table("org_api_keys")
    op.drop_table("projects")
    op.drop_table("invitations")
    op.drop_table("members")
    op.drop_table("organizations")
    op.drop_table("sessions")
    op.drop_table("users")

"""Pydantic schemas for organizations, members, invitations and projects."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

ROLE_PATTERN = r"^(owner|admin|member)$"


# ─── Organizations ──────────────────────────────────────

class OrgCreate(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9-]+$")
    logo_url: Optional[str] = Field(None, max_length=1024)


class OrgUpdate(BaseModel):
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    slug: Optional[str] = Field(None, min_length=1, max_length=100, pattern=r"^[a-z0-9-]+$")
    logo_url: Optional[str] = Field(None, max_length=1024)


class OrgRead(BaseModel):
    id: int
    display_name: str
    slug: str
    logo_url: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class OrgWithRole(OrgRead):
    role: str


# ─── Members ────────────────────────────────────────────

class MemberRead(BaseModel):
    id: int
    organization_id: int
    user_id: int
    email: str
    display_name: str
    role: str
    invited_by: Optional[int] = None
    created_at: datetime


class RoleChange(BaseModel):
    role: str = Field(..., pattern=ROLE_PATTERN)


# ─── Invitations ────────────────────────────────────────

class InvitationCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    role: str = Field(default="member", pattern=ROLE_PATTERN)


class InvitationRead(BaseModel):
    id: int
    organization_id: int
    email: str
    role: str
    invited_by: Optional[int] = None
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class InvitationCreated(InvitationRead):
    """Creation response — the only place the token is returned."""
    token: str


class InvitationAccept(BaseModel):
    token: str = Field(..., min_length=1)


class MembershipRead(BaseModel):
    id: int
    organization_id: int
    user_id: int
    role: str
    invited_by: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── Projects ───────────────────────────────────────────

class ProjectCreate(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=255)


class ProjectRead(BaseModel):
    id: int
    organization_id: int
    display_name: str
    created_at: datetime

    model_config = {"from_attributes": True}

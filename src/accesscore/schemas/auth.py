"""Pydantic schemas for signup, login and the current principal.

Learn: The session token appears in exactly two responses (signup and
login). Nothing else ever echoes it back.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SignupRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=8, max_length=128)
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)


class LoginRequest(BaseModel):
    email: str
    password: str


class UserRead(BaseModel):
    id: int
    email: str
    display_name: str
    avatar_url: Optional[str] = None
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UserUpdate(BaseModel):
    """Partial update — only non-None fields are applied."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    avatar_url: Optional[str] = Field(None, max_length=1024)


class SessionResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserRead
    organization_id: Optional[int] = None


class PrincipalRead(BaseModel):
    type: str
    user: Optional[UserRead] = None
    organization_id: Optional[int] = None
    project_id: Optional[int] = None
    permissions: Optional[list[str]] = None

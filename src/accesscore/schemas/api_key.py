"""Pydantic schemas for organization and project API keys.

Learn: ApiKeyCreated is the only schema with a `key` field. Listings
carry the masked prefix, never the secret or its hash.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    permissions: Optional[list[str]] = Field(
        None, description="Permission list; omit for unrestricted"
    )
    expires_at: Optional[datetime] = None


class ApiKeyRead(BaseModel):
    id: int
    name: str
    key_prefix: str
    masked_key: str
    permissions: Optional[list[str]] = None
    status: str
    organization_id: int
    project_id: Optional[int] = None
    created_by: int
    created_by_email: Optional[str] = None
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime


class ApiKeyCreated(ApiKeyRead):
    """Response for key issuance — `key` is shown ONCE."""
    key: str

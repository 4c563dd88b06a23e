"""Pydantic schemas for session properties, user values and RLS policies.

Learn: Values travel as strings and are validated against the
property's declared type by the service, not here, so the error
message can name the property type.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

IDENTIFIER = r"^[A-Za-z_][A-Za-z0-9_]*$"


# ─── Session properties ─────────────────────────────────

class SessionPropertyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, pattern=IDENTIFIER)
    type: str = Field(..., pattern=r"^(string|number|boolean)$")
    required: bool = False
    default_expr: Optional[str] = None


class SessionPropertyUpdate(BaseModel):
    """Partial update. default_expr is cleared by sending null explicitly."""
    name: Optional[str] = Field(None, min_length=1, max_length=255, pattern=IDENTIFIER)
    type: Optional[str] = Field(None, pattern=r"^(string|number|boolean)$")
    required: Optional[bool] = None
    default_expr: Optional[str] = None


class SessionPropertyRead(BaseModel):
    id: int
    project_id: int
    name: str
    type: str
    required: bool
    default_expr: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── Values ─────────────────────────────────────────────

class PropertyValueAssign(BaseModel):
    user_id: int
    session_property_id: int
    value: str


class PropertyValueBatch(BaseModel):
    values: list[PropertyValueAssign]


class PropertyValueRead(BaseModel):
    user_id: int
    session_property_id: int
    name: str
    value: str


class ContextEntry(BaseModel):
    value: Any
    deferred: bool = False


class RlsContextRead(BaseModel):
    project_id: int
    user_id: int
    context: dict[str, ContextEntry]


# ─── Policies ───────────────────────────────────────────

class RlsPolicyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    condition: str = Field(..., min_length=1)
    session_property_ids: list[int] = Field(default_factory=list)
    model_ids: list[int] = Field(default_factory=list)


class RlsPolicyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    condition: Optional[str] = Field(None, min_length=1)
    session_property_ids: Optional[list[int]] = None
    model_ids: Optional[list[int]] = None


class RlsPolicyRead(BaseModel):
    id: int
    project_id: int
    name: str
    condition: str
    session_property_ids: list[int]
    model_ids: list[int]
    created_at: datetime

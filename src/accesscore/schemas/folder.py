"""Pydantic schemas for folders, grants and item filing."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class FolderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    visibility: str = Field(default="private", pattern=r"^(private|shared)$")


class FolderUpdate(BaseModel):
    """Partial update — only non-None fields are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    visibility: Optional[str] = Field(None, pattern=r"^(private|shared)$")


class FolderRead(BaseModel):
    id: int
    project_id: int
    name: str
    type: str
    owner_id: Optional[int] = None
    visibility: str
    sort_order: int
    created_at: datetime

    model_config = {"from_attributes": True}


class FolderAccessEntry(BaseModel):
    user_id: int
    role: str = Field(..., pattern=r"^(editor|viewer)$")


class FolderAccessRead(FolderAccessEntry):
    id: int
    folder_id: int
    created_at: datetime

    model_config = {"from_attributes": True}


class FolderAccessSet(BaseModel):
    entries: list[FolderAccessEntry]


class FolderReorder(BaseModel):
    folder_ids: list[int]


class ItemMove(BaseModel):
    item_type: str = Field(..., pattern=r"^(dashboard|thread|spreadsheet)$")
    item_id: int
    folder_id: Optional[int] = None


class ItemRead(BaseModel):
    id: int
    project_id: int
    name: str
    folder_id: Optional[int] = None

    model_config = {"from_attributes": True}

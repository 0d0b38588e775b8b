from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.activity import ActivityAction
from app.services.duplicates import ConflictAction


class FolderCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    parent_folder_id: UUID | None = None


class FolderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    parent_folder_id: UUID | None = None
    is_deleted: bool
    deleted_at: datetime | None = None
    created_at: datetime


class ContentRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    content_address: str
    filename: str
    original_filename: str
    size: int
    mime: str | None = None
    parent_folder_id: UUID | None = None
    is_pinned: bool
    is_starred: bool
    is_deleted: bool
    deleted_at: datetime | None = None
    last_accessed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ContentRecordUpdate(BaseModel):
    """Only the fields present in the request body are applied."""

    filename: str | None = Field(default=None, min_length=1, max_length=255)
    parent_folder_id: UUID | None = None
    is_starred: bool | None = None


class PinStateRead(BaseModel):
    content_address: str
    record_id: UUID
    reference_count: int
    store_called: bool
    changed: bool
    is_pinned: bool


class ConflictDecision(BaseModel):
    index: int = Field(ge=0)
    action: ConflictAction | None = None
    apply_to_all: bool = False
    cancel_all: bool = False

    @model_validator(mode="after")
    def _check_combination(self):
        if self.cancel_all and self.action not in (None, ConflictAction.cancel):
            raise ValueError("cancel_all cannot be combined with another action")
        if self.cancel_all and self.apply_to_all:
            raise ValueError("cancel_all cannot be combined with apply_to_all")
        if not self.cancel_all and self.action is None:
            raise ValueError("action is required unless cancel_all is set")
        return self


class DuplicateCheckRequest(BaseModel):
    filenames: list[str] = Field(min_length=1)
    folder_id: UUID | None = None


class DuplicateConflictRead(BaseModel):
    index: int
    filename: str
    existing_record_id: UUID | None = None
    suggested_name: str


class DuplicateCheckResponse(BaseModel):
    conflicts: list[DuplicateConflictRead]


class UploadOutcomeRead(BaseModel):
    index: int
    filename: str
    final_name: str
    status: str
    action: ConflictAction | None = None
    error_code: str | None = None
    record: ContentRecordRead | None = None


class UploadResponse(BaseModel):
    items: list[UploadOutcomeRead]


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: ActivityAction
    record_id: UUID | None = None
    folder_id: UUID | None = None
    subject_name: str | None = None
    details: dict | None = None
    created_at: datetime

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from app.schemas.content import ContentRecordRead, FolderRead


class DeletionSummaryRead(BaseModel):
    permanently_deleted_count: int
    references_released_count: int
    failed_count: int = 0


class TrashedFileRead(ContentRecordRead):
    expires_at: datetime | None = None
    days_remaining: int | None = None


class TrashedFolderRead(FolderRead):
    expires_at: datetime | None = None
    days_remaining: int | None = None


class TrashListResponse(BaseModel):
    files: list[TrashedFileRead]
    folders: list[TrashedFolderRead]
    swept: DeletionSummaryRead | None = None


class AlreadyDeletedRead(BaseModel):
    id: str
    status: str = "already_deleted"

from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_db
from app.models.user import User
from app.schemas.content import ContentRecordRead, FolderRead
from app.schemas.trash import (
    AlreadyDeletedRead,
    DeletionSummaryRead,
    TrashedFileRead,
    TrashedFolderRead,
    TrashListResponse,
)
from app.services.common import as_utc, utcnow
from app.services.trash import trash

router = APIRouter(prefix="/trash", tags=["trash"])


def _days_remaining(expires_at: datetime | None, now: datetime) -> int | None:
    if expires_at is None:
        return None
    return max(0, (as_utc(expires_at) - now).days)


def _with_expiry(schema, item, now: datetime):
    expires_at = trash.expires_at(item.deleted_at)
    return schema.model_validate(item).model_copy(
        update={
            "expires_at": expires_at,
            "days_remaining": _days_remaining(expires_at, now),
        }
    )


def _already_deleted(item_id: str) -> JSONResponse:
    # Purged between trash listing and restore; nothing left to bring back.
    return JSONResponse(AlreadyDeletedRead(id=item_id).model_dump())


@router.get("", response_model=TrashListResponse)
def list_trash(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    now = utcnow()
    listing = trash.list_trash(db, current_user.id, now)
    return TrashListResponse(
        files=[_with_expiry(TrashedFileRead, record, now) for record in listing.files],
        folders=[_with_expiry(TrashedFolderRead, folder, now) for folder in listing.folders],
        swept=DeletionSummaryRead(**listing.swept.as_dict()) if listing.swept else None,
    )


@router.delete("", response_model=DeletionSummaryRead)
def empty_trash(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return trash.empty_trash(db, current_user.id).as_dict()


@router.post("/sweep", response_model=DeletionSummaryRead)
def sweep_trash(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return trash.sweep_expired(db, owner_id=current_user.id).as_dict()


@router.post("/files/{record_id}", response_model=ContentRecordRead)
def trash_file(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return trash.trash_file(db, current_user.id, record_id)


@router.post("/folders/{folder_id}", response_model=FolderRead)
def trash_folder(
    folder_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return trash.trash_folder(db, current_user.id, folder_id)


@router.post("/files/{record_id}/restore", response_model=ContentRecordRead)
def restore_file(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    record = trash.restore_file(db, current_user.id, record_id)
    if record is None:
        return _already_deleted(record_id)
    return record


@router.post("/folders/{folder_id}/restore", response_model=FolderRead)
def restore_folder(
    folder_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    folder = trash.restore_folder(db, current_user.id, folder_id)
    if folder is None:
        return _already_deleted(folder_id)
    return folder


@router.delete("/files/{record_id}", response_model=DeletionSummaryRead)
def delete_file(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return trash.permanently_delete_file(db, current_user.id, record_id).as_dict()


@router.delete("/folders/{folder_id}", response_model=DeletionSummaryRead)
def delete_folder(
    folder_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return trash.permanently_delete_folder(db, current_user.id, folder_id).as_dict()

"""File upload, pinning, download and folder endpoints."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import Response
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_db
from app.models.user import User
from app.schemas.content import (
    ActivityRead,
    ConflictDecision,
    ContentRecordRead,
    ContentRecordUpdate,
    DuplicateCheckRequest,
    DuplicateCheckResponse,
    FolderCreate,
    FolderRead,
    PinStateRead,
    UploadOutcomeRead,
    UploadResponse,
)
from app.services.activity import activities
from app.services.content import IncomingFile, content
from app.services.duplicates import Decision
from app.services.exceptions import ValidationError

router = APIRouter(tags=["content"])

_decisions_adapter = TypeAdapter(list[ConflictDecision])


def parse_decisions(raw: str | None) -> dict[int, Decision]:
    if not raw:
        return {}
    try:
        items = _decisions_adapter.validate_python(json.loads(raw))
    except (ValueError, PydanticValidationError) as exc:
        raise ValidationError("decisions must be a JSON list of conflict decisions") from exc
    return {
        item.index: Decision(
            action=item.action, apply_to_all=item.apply_to_all, cancel_all=item.cancel_all
        )
        for item in items
    }


def _content_disposition(filename: str) -> str:
    quoted = filename.replace('"', "")
    return f'attachment; filename="{quoted}"'


@router.get("/files", response_model=list[ContentRecordRead])
def list_files(
    folder_id: str | None = Query(default=None),
    starred: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return content.list_files(db, current_user.id, folder_id, starred)


@router.post("/files/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
def upload_files(
    files: list[UploadFile] = File(...),
    folder_id: str | None = Form(default=None),
    pin: bool | None = Form(default=None),
    decisions: str | None = Form(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    incoming = [
        IncomingFile(
            filename=upload.filename or "file",
            data=upload.file.read(),
            mime=upload.content_type,
        )
        for upload in files
    ]
    outcomes = content.upload(
        db,
        current_user,
        incoming,
        folder_id=folder_id or None,
        pin=pin,
        decisions=parse_decisions(decisions),
    )
    return UploadResponse(
        items=[
            UploadOutcomeRead(
                index=outcome.index,
                filename=outcome.filename,
                final_name=outcome.final_name,
                status=outcome.status,
                action=outcome.action,
                error_code=outcome.error_code,
                record=ContentRecordRead.model_validate(outcome.record) if outcome.record else None,
            )
            for outcome in outcomes
        ]
    )


@router.post("/files/duplicates/check", response_model=DuplicateCheckResponse)
def check_duplicates(
    payload: DuplicateCheckRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conflicts = content.check_duplicates(
        db, current_user.id, payload.filenames, payload.folder_id
    )
    return {"conflicts": conflicts}


@router.patch("/files/{record_id}", response_model=ContentRecordRead)
def update_file(
    record_id: str,
    payload: ContentRecordUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    changes = payload.model_dump(exclude_unset=True)
    return content.update(db, current_user, record_id, **changes)


@router.post("/files/{record_id}/pin", response_model=PinStateRead)
def pin_file(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = content.pin(db, current_user, record_id)
    return PinStateRead(
        content_address=result.content_address,
        record_id=result.record_id,
        reference_count=result.reference_count,
        store_called=result.store_called,
        changed=result.changed,
        is_pinned=True,
    )


@router.delete("/files/{record_id}/pin", response_model=PinStateRead)
def unpin_file(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = content.unpin(db, current_user, record_id)
    return PinStateRead(
        content_address=result.content_address,
        record_id=result.record_id,
        reference_count=result.reference_count,
        store_called=result.store_called,
        changed=result.changed,
        is_pinned=False,
    )


@router.get("/files/{record_id}/download")
def download_file(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    record, data = content.download(db, current_user, record_id)
    return Response(
        content=data,
        media_type=record.mime or "application/octet-stream",
        headers={"Content-Disposition": _content_disposition(record.filename)},
    )


@router.post("/folders", response_model=FolderRead, status_code=status.HTTP_201_CREATED)
def create_folder(
    payload: FolderCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return content.create_folder(db, current_user.id, payload.name, payload.parent_folder_id)


@router.get("/activity", response_model=list[ActivityRead])
def list_activity(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return activities.list(db, current_user.id, limit=limit, offset=offset)

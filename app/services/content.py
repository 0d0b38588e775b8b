"""Content records: upload, pin/unpin, download and edits."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath

from sqlalchemy.orm import Session

from app.config import settings
from app.models.activity import ActivityAction
from app.models.content import ContentRecord, FolderRecord
from app.models.user import User
from app.services.activity import activities
from app.services.billing.state import BillingStateMachine, billing_state
from app.services.common import coerce_uuid, get_owned, utcnow
from app.services.content_store import ContentStore, get_content_store
from app.services.duplicates import ConflictAction, Decision, DuplicateResolver, duplicates
from app.services.exceptions import (
    ConflictError,
    NotFoundError,
    StorageLimitError,
    StoreUnavailableError,
    ValidationError,
)
from app.services.pin_ledger import PinLedger, PinResult, UnpinResult, pin_ledger
from app.services.usage import UsageMeter, usage_meter

logger = logging.getLogger(__name__)

UNSAFE_NAME_RE = re.compile(r'[\x00-\x1f<>:"/\\|?*]+')

_UNSET = object()


def sanitize_name(name: str) -> str:
    cleaned = UNSAFE_NAME_RE.sub("_", PurePosixPath(name.replace("\\", "/")).name).strip()
    if not cleaned or cleaned in {".", ".."}:
        raise ValidationError("Name must not be empty")
    return cleaned[:255]


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    data: bytes
    mime: str | None = None


@dataclass
class UploadOutcome:
    index: int
    filename: str
    final_name: str
    status: str
    record: ContentRecord | None = None
    action: ConflictAction | None = None
    error_code: str | None = None


class ContentService:
    def __init__(
        self,
        store: ContentStore | None = None,
        ledger: PinLedger | None = None,
        state_machine: BillingStateMachine | None = None,
        meter: UsageMeter | None = None,
        resolver: DuplicateResolver | None = None,
        max_upload_bytes: int | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger or pin_ledger
        self.state_machine = state_machine or billing_state
        self.meter = meter or usage_meter
        self.resolver = resolver or duplicates
        self.max_upload_bytes = max_upload_bytes or settings.max_upload_bytes

    def _store(self) -> ContentStore:
        if self.store is None:
            self.store = get_content_store()
        return self.store

    # -- folders -----------------------------------------------------------

    @staticmethod
    def active_folder(db: Session, owner_id, folder_id) -> FolderRecord | None:
        """Resolve a target folder; None means the root."""
        if folder_id is None:
            return None
        folder = get_owned(db, FolderRecord, folder_id, owner_id, "Folder")
        if folder.is_deleted:
            raise NotFoundError("Folder is in trash")
        return folder

    def create_folder(self, db: Session, owner_id, name: str, parent_folder_id=None) -> FolderRecord:
        name = sanitize_name(name)
        parent = self.active_folder(db, owner_id, parent_folder_id)
        parent_id = parent.id if parent else None
        query = (
            db.query(FolderRecord)
            .filter(FolderRecord.owner_id == coerce_uuid(owner_id))
            .filter(FolderRecord.is_deleted.is_(False))
        )
        if parent_id is None:
            query = query.filter(FolderRecord.parent_folder_id.is_(None))
        else:
            query = query.filter(FolderRecord.parent_folder_id == parent_id)
        if any(folder.name.lower() == name.lower() for folder in query.all()):
            raise ConflictError("A folder with this name already exists", details={"name": name})
        folder = FolderRecord(owner_id=coerce_uuid(owner_id), name=name, parent_folder_id=parent_id)
        db.add(folder)
        db.commit()
        db.refresh(folder)
        return folder

    @staticmethod
    def list_files(db: Session, owner_id, folder_id=None, starred: bool | None = None):
        query = (
            db.query(ContentRecord)
            .filter(ContentRecord.owner_id == coerce_uuid(owner_id))
            .filter(ContentRecord.is_deleted.is_(False))
        )
        if folder_id is None:
            query = query.filter(ContentRecord.parent_folder_id.is_(None))
        else:
            query = query.filter(ContentRecord.parent_folder_id == coerce_uuid(folder_id))
        if starred is not None:
            query = query.filter(ContentRecord.is_starred.is_(starred))
        return query.order_by(ContentRecord.created_at.desc()).all()

    # -- uploads -----------------------------------------------------------

    def check_duplicates(self, db: Session, owner_id, filenames: list[str], folder_id=None) -> list[dict]:
        """Conflicts the given names would hit, with suggested KEEP_BOTH names."""
        folder = self.active_folder(db, owner_id, folder_id)
        names = [sanitize_name(name) for name in filenames]
        plan = self.resolver.plan(db, owner_id, folder.id if folder else None, names)
        return [conflict.as_dict() for conflict in plan.unresolved]

    def _check_quota(self, db: Session, user: User, plan, files: list[IncomingFile]) -> None:
        incoming = sum(len(files[item.index].data) for item in plan.accepted)
        replaced = 0
        for item in plan.accepted:
            if item.replaces_record_id is not None:
                existing = db.get(ContentRecord, item.replaces_record_id)
                replaced += existing.size if existing else 0
        stored = self.meter.stored_bytes(db, user.id)
        if stored - replaced + incoming > user.storage_limit_bytes:
            raise StorageLimitError(
                details={
                    "storage_used": stored,
                    "storage_limit": user.storage_limit_bytes,
                    "incoming": incoming,
                }
            )

    def _remove_replaced(self, db: Session, owner_id, record_id, now: datetime) -> None:
        existing = db.get(ContentRecord, record_id)
        if existing is None:
            return
        self.ledger.release_pin(db, existing, delete_record=True, now=now)
        logger.info("content_replaced record_id=%s owner_id=%s", record_id, owner_id)

    def upload(
        self,
        db: Session,
        user: User,
        files: list[IncomingFile],
        folder_id=None,
        pin: bool | None = None,
        decisions: dict[int, Decision] | None = None,
        now: datetime | None = None,
    ) -> list[UploadOutcome]:
        """Upload a batch of files into one folder.

        Raises ``ConflictError`` (nothing written) while any duplicate name is
        unresolved. Each accepted file is added to the store, recorded, and
        pinned through the ledger when ``pin`` is set (defaulting to the
        user's auto-pin preference).
        """
        now = utcnow(now)
        if not files:
            raise ValidationError("No files provided")
        files = [
            IncomingFile(filename=sanitize_name(f.filename), data=f.data, mime=f.mime)
            for f in files
        ]
        for f in files:
            if len(f.data) > self.max_upload_bytes:
                raise ValidationError(
                    f"{f.filename} exceeds the maximum upload size",
                    details={"max_upload_bytes": self.max_upload_bytes},
                )
        folder = self.active_folder(db, user.id, folder_id)
        parent_id = folder.id if folder else None
        pin = user.auto_pin_uploads if pin is None else pin

        self.state_machine.require_access(db, user.id, now)
        plan = self.resolver.plan_or_raise(
            db, user.id, parent_id, [f.filename for f in files], decisions
        )
        self._check_quota(db, user, plan, files)

        outcomes: list[UploadOutcome] = []
        last_error: StoreUnavailableError | None = None
        for item in plan.items:
            incoming = files[item.index]
            if item.skipped:
                outcomes.append(
                    UploadOutcome(
                        index=item.index,
                        filename=item.filename,
                        final_name=item.final_name,
                        status="superseded" if item.superseded_by is not None else "skipped",
                        action=item.action,
                    )
                )
                continue
            try:
                added = self._store().add(incoming.data, item.final_name)
                record = ContentRecord(
                    owner_id=user.id,
                    content_address=added.content_address,
                    filename=item.final_name,
                    original_filename=incoming.filename,
                    size=added.size,
                    mime=incoming.mime,
                    parent_folder_id=parent_id,
                )
                db.add(record)
                db.flush()
                activities.record(
                    db,
                    user.id,
                    ActivityAction.upload,
                    record_id=record.id,
                    folder_id=parent_id,
                    subject_name=record.filename,
                    details={"size": record.size, "pinned": pin},
                )
                if pin:
                    self.ledger.request_pin(db, record, now)
                else:
                    db.commit()
            except StoreUnavailableError as exc:
                db.rollback()
                last_error = exc
                outcomes.append(
                    UploadOutcome(
                        index=item.index,
                        filename=item.filename,
                        final_name=item.final_name,
                        status="failed",
                        action=item.action,
                        error_code=exc.code.value,
                    )
                )
                continue

            error_code = None
            if item.replaces_record_id is not None:
                try:
                    self._remove_replaced(db, user.id, item.replaces_record_id, now)
                except StoreUnavailableError as exc:
                    # The new copy is committed; the old one stays until retried.
                    db.rollback()
                    logger.warning(
                        "content_replace_release_failed record_id=%s", item.replaces_record_id
                    )
                    error_code = exc.code.value

            status = "uploaded"
            if item.action == ConflictAction.replace:
                status = "replaced"
            elif item.action == ConflictAction.keep_both:
                status = "renamed"
            logger.info(
                "content_upload_success record_id=%s address=%s size=%s status=%s",
                record.id,
                record.content_address,
                record.size,
                status,
            )
            outcomes.append(
                UploadOutcome(
                    index=item.index,
                    filename=item.filename,
                    final_name=item.final_name,
                    status=status,
                    record=record,
                    action=item.action,
                    error_code=error_code,
                )
            )
        if last_error is not None and not any(o.record is not None for o in outcomes):
            raise last_error
        return outcomes

    # -- pin / unpin -------------------------------------------------------

    def pin(self, db: Session, user: User, record_id, now: datetime | None = None) -> PinResult:
        now = utcnow(now)
        record = get_owned(db, ContentRecord, record_id, user.id, "File")
        if record.is_deleted:
            raise ValidationError("Restore the file before pinning it")
        if not record.is_pinned:
            self.state_machine.require_access(db, user.id, now)
            activities.record(
                db, user.id, ActivityAction.pin, record_id=record.id, subject_name=record.filename
            )
        return self.ledger.request_pin(db, record, now)

    def unpin(self, db: Session, user: User, record_id, now: datetime | None = None) -> UnpinResult:
        record = get_owned(db, ContentRecord, record_id, user.id, "File")
        if record.is_pinned:
            activities.record(
                db, user.id, ActivityAction.unpin, record_id=record.id, subject_name=record.filename
            )
        return self.ledger.release_pin(db, record, now=now)

    # -- access & edits ----------------------------------------------------

    def download(
        self, db: Session, user: User, record_id, now: datetime | None = None
    ) -> tuple[ContentRecord, bytes]:
        record = get_owned(db, ContentRecord, record_id, user.id, "File")
        if record.is_deleted:
            raise NotFoundError("File is in trash")
        data = self._store().fetch(record.content_address)
        record.last_accessed_at = utcnow(now)
        activities.record(
            db, user.id, ActivityAction.download, record_id=record.id, subject_name=record.filename
        )
        db.commit()
        return record, data

    def update(
        self,
        db: Session,
        user: User,
        record_id,
        filename: str | None = None,
        parent_folder_id=_UNSET,
        is_starred: bool | None = None,
    ) -> ContentRecord:
        """Rename, move or star a file. Name collisions raise ``ConflictError``."""
        record = get_owned(db, ContentRecord, record_id, user.id, "File")
        if record.is_deleted:
            raise NotFoundError("File is in trash")
        target_name = sanitize_name(filename) if filename is not None else record.filename
        target_parent = record.parent_folder_id
        if parent_folder_id is not _UNSET:
            folder = self.active_folder(db, user.id, parent_folder_id)
            target_parent = folder.id if folder else None
        if target_name != record.filename or target_parent != record.parent_folder_id:
            clash = self.resolver.find_conflict(
                db, user.id, target_parent, target_name, exclude_record_id=record.id
            )
            if clash is not None:
                raise ConflictError(
                    "An item with this name already exists",
                    details={
                        "name": target_name,
                        "suggested_name": self.resolver.suggest_name(
                            db, user.id, target_parent, target_name
                        ),
                    },
                )
        record.filename = target_name
        record.parent_folder_id = target_parent
        if is_starred is not None:
            record.is_starred = is_starred
        db.commit()
        db.refresh(record)
        return record


content = ContentService()

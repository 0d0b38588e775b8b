"""Trash lifecycle: ACTIVE -> TRASHED -> PERMANENTLY_DELETED, with restore.

Trashing keeps pin references (trashed files stay billed). Only trashed items
can be deleted permanently, and every permanent removal goes through
``PinLedger.release_pin``, which deletes the row in the same transaction that
gives up its reference.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import TRASH_SWEEP_DELETED
from app.models.activity import ActivityAction
from app.models.content import ContentRecord, FolderRecord
from app.services.activity import activities
from app.services.common import as_utc, coerce_uuid, get_owned, utcnow
from app.services.duplicates import next_available_name
from app.services.exceptions import OwnershipError, StoreUnavailableError, ValidationError
from app.services.pin_ledger import PinLedger, pin_ledger

logger = logging.getLogger(__name__)


@dataclass
class DeletionSummary:
    permanently_deleted_count: int = 0
    references_released_count: int = 0
    failed_count: int = 0

    def add(self, other: "DeletionSummary") -> None:
        self.permanently_deleted_count += other.permanently_deleted_count
        self.references_released_count += other.references_released_count
        self.failed_count += other.failed_count

    def as_dict(self) -> dict:
        return {
            "permanently_deleted_count": self.permanently_deleted_count,
            "references_released_count": self.references_released_count,
            "failed_count": self.failed_count,
        }


@dataclass
class TrashListing:
    files: list[ContentRecord]
    folders: list[FolderRecord]
    swept: DeletionSummary | None = None


def descendant_folder_ids(db: Session, root_id) -> list:
    """``root_id`` and every folder below it, parents before children."""
    ordered = [coerce_uuid(root_id)]
    frontier = [coerce_uuid(root_id)]
    while frontier:
        children = [
            row.id
            for row in db.query(FolderRecord.id)
            .filter(FolderRecord.parent_folder_id.in_(frontier))
            .all()
        ]
        children = [child for child in children if child not in ordered]
        ordered.extend(children)
        frontier = children
    return ordered


class TrashManager:
    def __init__(self, ledger: PinLedger | None = None, retention_days: int | None = None):
        self.ledger = ledger or pin_ledger
        self.retention_days = (
            settings.trash_retention_days if retention_days is None else retention_days
        )

    def expires_at(self, deleted_at: datetime | None) -> datetime | None:
        if deleted_at is None:
            return None
        return as_utc(deleted_at) + timedelta(days=self.retention_days)

    # -- move to trash ---------------------------------------------------

    def trash_file(self, db: Session, owner_id, record_id, now: datetime | None = None) -> ContentRecord:
        now = utcnow(now)
        record = get_owned(db, ContentRecord, record_id, owner_id, "File")
        if record.is_deleted:
            return record
        record.is_deleted = True
        record.deleted_at = now
        activities.record(
            db, owner_id, ActivityAction.trash, record_id=record.id, subject_name=record.filename
        )
        db.commit()
        logger.info("trash_file record_id=%s pinned=%s", record.id, record.is_pinned)
        return record

    def trash_folder(self, db: Session, owner_id, folder_id, now: datetime | None = None) -> FolderRecord:
        now = utcnow(now)
        folder = get_owned(db, FolderRecord, folder_id, owner_id, "Folder")
        if folder.is_deleted:
            return folder
        folder_ids = descendant_folder_ids(db, folder.id)
        (
            db.query(FolderRecord)
            .filter(FolderRecord.id.in_(folder_ids))
            .filter(FolderRecord.is_deleted.is_(False))
            .update({"is_deleted": True, "deleted_at": now}, synchronize_session="fetch")
        )
        (
            db.query(ContentRecord)
            .filter(ContentRecord.parent_folder_id.in_(folder_ids))
            .filter(ContentRecord.is_deleted.is_(False))
            .update({"is_deleted": True, "deleted_at": now}, synchronize_session="fetch")
        )
        activities.record(
            db, owner_id, ActivityAction.trash, folder_id=folder.id, subject_name=folder.name
        )
        db.commit()
        logger.info("trash_folder folder_id=%s descendants=%s", folder.id, len(folder_ids) - 1)
        return folder

    # -- restore ---------------------------------------------------------

    @staticmethod
    def _parent_is_active(db: Session, parent_folder_id) -> bool:
        if parent_folder_id is None:
            return True
        parent = db.get(FolderRecord, parent_folder_id)
        return parent is not None and not parent.is_deleted

    @staticmethod
    def _free_file_name(db: Session, record: ContentRecord) -> str:
        query = (
            db.query(ContentRecord.filename)
            .filter(ContentRecord.owner_id == record.owner_id)
            .filter(ContentRecord.is_deleted.is_(False))
            .filter(ContentRecord.id != record.id)
        )
        if record.parent_folder_id is None:
            query = query.filter(ContentRecord.parent_folder_id.is_(None))
        else:
            query = query.filter(ContentRecord.parent_folder_id == record.parent_folder_id)
        taken = {row.filename.lower() for row in query.all()}
        if record.filename.lower() not in taken:
            return record.filename
        return next_available_name(record.filename, taken)

    @staticmethod
    def _free_folder_name(db: Session, folder: FolderRecord) -> str:
        query = (
            db.query(FolderRecord.name)
            .filter(FolderRecord.owner_id == folder.owner_id)
            .filter(FolderRecord.is_deleted.is_(False))
            .filter(FolderRecord.id != folder.id)
        )
        if folder.parent_folder_id is None:
            query = query.filter(FolderRecord.parent_folder_id.is_(None))
        else:
            query = query.filter(FolderRecord.parent_folder_id == folder.parent_folder_id)
        taken = {row.name.lower() for row in query.all()}
        if folder.name.lower() not in taken:
            return folder.name
        return next_available_name(folder.name, taken)

    def restore_file(self, db: Session, owner_id, record_id, now: datetime | None = None) -> ContentRecord | None:
        """Restore a trashed file. Returns None if it was already purged."""
        record = db.get(ContentRecord, coerce_uuid(record_id))
        if record is None:
            logger.info("trash_restore_missing record_id=%s", record_id)
            return None
        if record.owner_id != coerce_uuid(owner_id):
            raise OwnershipError("File does not belong to the caller")
        if not record.is_deleted:
            return record
        if not self._parent_is_active(db, record.parent_folder_id):
            record.parent_folder_id = None
        record.filename = self._free_file_name(db, record)
        record.is_deleted = False
        record.deleted_at = None
        activities.record(
            db, owner_id, ActivityAction.restore, record_id=record.id, subject_name=record.filename
        )
        db.commit()
        return record

    def restore_folder(self, db: Session, owner_id, folder_id, now: datetime | None = None) -> FolderRecord | None:
        """Restore a trashed folder and everything trashed beneath it."""
        folder = db.get(FolderRecord, coerce_uuid(folder_id))
        if folder is None:
            logger.info("trash_restore_missing folder_id=%s", folder_id)
            return None
        if folder.owner_id != coerce_uuid(owner_id):
            raise OwnershipError("Folder does not belong to the caller")
        if not folder.is_deleted:
            return folder
        if not self._parent_is_active(db, folder.parent_folder_id):
            folder.parent_folder_id = None
        folder.name = self._free_folder_name(db, folder)
        folder_ids = descendant_folder_ids(db, folder.id)
        (
            db.query(FolderRecord)
            .filter(FolderRecord.id.in_(folder_ids))
            .update({"is_deleted": False, "deleted_at": None}, synchronize_session="fetch")
        )
        (
            db.query(ContentRecord)
            .filter(ContentRecord.parent_folder_id.in_(folder_ids))
            .filter(ContentRecord.is_deleted.is_(True))
            .update({"is_deleted": False, "deleted_at": None}, synchronize_session="fetch")
        )
        activities.record(
            db, owner_id, ActivityAction.restore, folder_id=folder.id, subject_name=folder.name
        )
        db.commit()
        return folder

    # -- permanent deletion ----------------------------------------------

    def _purge_file(self, db: Session, record: ContentRecord, now: datetime) -> DeletionSummary:
        summary = DeletionSummary(permanently_deleted_count=1)
        activities.record(
            db,
            record.owner_id,
            ActivityAction.delete,
            record_id=record.id,
            subject_name=record.filename,
        )
        result = self.ledger.release_pin(db, record, delete_record=True, now=now)
        if result.released:
            summary.references_released_count = 1
        return summary

    def _purge_folder(self, db: Session, folder: FolderRecord, now: datetime) -> DeletionSummary:
        summary = DeletionSummary()
        owner_id = folder.owner_id
        folder_name = folder.name
        folder_ids = descendant_folder_ids(db, folder.id)
        record_ids = [
            row.id
            for row in db.query(ContentRecord.id)
            .filter(ContentRecord.parent_folder_id.in_(folder_ids))
            .all()
        ]
        for record_id in record_ids:
            record = db.get(ContentRecord, record_id)
            if record is None:
                continue
            summary.add(self._purge_file(db, record, now))
        for folder_id in reversed(folder_ids):
            row = db.get(FolderRecord, folder_id)
            if row is not None:
                db.delete(row)
                db.flush()
                summary.permanently_deleted_count += 1
        activities.record(
            db, owner_id, ActivityAction.delete, folder_id=folder_ids[0], subject_name=folder_name
        )
        db.commit()
        return summary

    def permanently_delete_file(
        self, db: Session, owner_id, record_id, now: datetime | None = None
    ) -> DeletionSummary:
        """Delete a trashed file for good. An already purged file is a no-op."""
        now = utcnow(now)
        record = db.get(ContentRecord, coerce_uuid(record_id))
        if record is None:
            return DeletionSummary()
        if record.owner_id != coerce_uuid(owner_id):
            raise OwnershipError("File does not belong to the caller")
        if not record.is_deleted:
            raise ValidationError("Move the file to trash before deleting it permanently")
        return self._purge_file(db, record, now)

    def permanently_delete_folder(
        self, db: Session, owner_id, folder_id, now: datetime | None = None
    ) -> DeletionSummary:
        """Delete a folder and all descendants; each pinned file releases its own reference."""
        now = utcnow(now)
        folder = db.get(FolderRecord, coerce_uuid(folder_id))
        if folder is None:
            return DeletionSummary()
        if folder.owner_id != coerce_uuid(owner_id):
            raise OwnershipError("Folder does not belong to the caller")
        if not folder.is_deleted:
            raise ValidationError("Move the folder to trash before deleting it permanently")
        return self._purge_folder(db, folder, now)

    def empty_trash(self, db: Session, owner_id, now: datetime | None = None) -> DeletionSummary:
        now = utcnow(now)
        owner_id = coerce_uuid(owner_id)
        summary = DeletionSummary()
        folder_ids = [
            row.id
            for row in db.query(FolderRecord.id)
            .filter(FolderRecord.owner_id == owner_id)
            .filter(FolderRecord.is_deleted.is_(True))
            .all()
        ]
        for folder_id in folder_ids:
            folder = db.get(FolderRecord, folder_id)
            if folder is not None:
                summary.add(self._purge_folder(db, folder, now))
        record_ids = [
            row.id
            for row in db.query(ContentRecord.id)
            .filter(ContentRecord.owner_id == owner_id)
            .filter(ContentRecord.is_deleted.is_(True))
            .all()
        ]
        for record_id in record_ids:
            record = db.get(ContentRecord, record_id)
            if record is not None:
                summary.add(self._purge_file(db, record, now))
        logger.info("trash_emptied owner_id=%s summary=%s", owner_id, summary.as_dict())
        return summary

    # -- expiry ------------------------------------------------------------

    @staticmethod
    def _still_expired(row, cutoff: datetime) -> bool:
        if row is None or not row.is_deleted or row.deleted_at is None:
            return False
        return as_utc(row.deleted_at) <= cutoff

    def sweep_expired(
        self, db: Session, now: datetime | None = None, owner_id=None
    ) -> DeletionSummary:
        """Permanently delete items trashed longer than the retention window.

        Works from a snapshot of expired ids and re-checks each row before
        deleting it, so items restored (or already purged) in the meantime
        are skipped.
        """
        now = utcnow(now)
        cutoff = now - timedelta(days=self.retention_days)
        folder_query = (
            db.query(FolderRecord.id)
            .filter(FolderRecord.is_deleted.is_(True))
            .filter(FolderRecord.deleted_at <= cutoff)
        )
        file_query = (
            db.query(ContentRecord.id)
            .filter(ContentRecord.is_deleted.is_(True))
            .filter(ContentRecord.deleted_at <= cutoff)
        )
        if owner_id is not None:
            folder_query = folder_query.filter(FolderRecord.owner_id == coerce_uuid(owner_id))
            file_query = file_query.filter(ContentRecord.owner_id == coerce_uuid(owner_id))
        folder_ids = [row.id for row in folder_query.all()]
        file_ids = [row.id for row in file_query.all()]

        summary = DeletionSummary()
        for folder_id in folder_ids:
            folder = db.get(FolderRecord, folder_id)
            if not self._still_expired(folder, cutoff):
                continue
            try:
                result = self._purge_folder(db, folder, now)
            except StoreUnavailableError:
                logger.warning("trash_sweep_folder_failed folder_id=%s", folder_id)
                summary.failed_count += 1
                continue
            summary.add(result)
            TRASH_SWEEP_DELETED.labels(kind="folder").inc()
        for record_id in file_ids:
            record = db.get(ContentRecord, record_id)
            if not self._still_expired(record, cutoff):
                continue
            try:
                result = self._purge_file(db, record, now)
            except StoreUnavailableError:
                logger.warning("trash_sweep_file_failed record_id=%s", record_id)
                summary.failed_count += 1
                continue
            summary.add(result)
            TRASH_SWEEP_DELETED.labels(kind="file").inc()
        if summary.permanently_deleted_count or summary.failed_count:
            logger.info("trash_sweep_completed summary=%s", summary.as_dict())
        return summary

    def list_trash(
        self, db: Session, owner_id, now: datetime | None = None, sweep: bool = True
    ) -> TrashListing:
        """Trashed files and folders, newest first. Sweeps expired items first."""
        swept = self.sweep_expired(db, now, owner_id=owner_id) if sweep else None
        owner_id = coerce_uuid(owner_id)
        files = (
            db.query(ContentRecord)
            .filter(ContentRecord.owner_id == owner_id)
            .filter(ContentRecord.is_deleted.is_(True))
            .order_by(ContentRecord.deleted_at.desc())
            .all()
        )
        folders = (
            db.query(FolderRecord)
            .filter(FolderRecord.owner_id == owner_id)
            .filter(FolderRecord.is_deleted.is_(True))
            .order_by(FolderRecord.deleted_at.desc())
            .all()
        )
        return TrashListing(files=files, folders=folders, swept=swept)


trash = TrashManager()

"""Reference-counted pin ledger.

All physical pin/unpin traffic to the content store goes through this module.
For every content address the store holds a pin iff at least one pinned
content record points at it. Count-then-decide runs under a per-address lock
(in-process) plus a ``FOR UPDATE`` lock on the ``content_addresses`` row
(cross-process), and the store call happens before the commit so a failed
call leaves nothing persisted.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, inspect, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import observe_store_call
from app.models.content import ContentAddress, ContentRecord
from app.services.common import utcnow
from app.services.content_store import ContentStore, get_content_store
from app.services.exceptions import ConcurrencyConflict, NotFoundError, StoreUnavailableError
from app.services.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PinResult:
    content_address: str
    record_id: uuid.UUID
    reference_count: int
    store_called: bool
    changed: bool


@dataclass(frozen=True)
class UnpinResult:
    content_address: str
    record_id: uuid.UUID
    reference_count: int
    store_called: bool
    changed: bool
    record_deleted: bool = False
    released: bool = False


class PinLedger:
    def __init__(
        self,
        store: ContentStore | None = None,
        lock_timeout: float | None = None,
        max_attempts: int | None = None,
        retry_delay: float = 0.05,
    ) -> None:
        self.store = store
        self.lock_timeout = lock_timeout or settings.lock_timeout_seconds
        self.max_attempts = max(max_attempts or settings.lock_max_attempts, 1)
        self.retry_delay = retry_delay
        self._locks = KeyedLocks("content_address")

    def _store(self) -> ContentStore:
        if self.store is None:
            self.store = get_content_store()
        return self.store

    # -- queries -----------------------------------------------------------

    @staticmethod
    def reference_count(db: Session, content_address: str, exclude_record_id=None) -> int:
        """Number of pinned records pointing at ``content_address``.

        Trashed records still hold their reference; only permanent deletion
        (or an explicit unpin) gives it up.
        """
        stmt = (
            select(func.count(ContentRecord.id))
            .where(ContentRecord.content_address == content_address)
            .where(ContentRecord.is_pinned.is_(True))
        )
        if exclude_record_id is not None:
            stmt = stmt.where(ContentRecord.id != exclude_record_id)
        return int(db.scalar(stmt) or 0)

    @staticmethod
    def _lock_row(db: Session, content_address: str) -> ContentAddress:
        row = (
            db.query(ContentAddress)
            .filter(ContentAddress.address == content_address)
            .with_for_update()
            .first()
        )
        if not row:
            row = ContentAddress(address=content_address, reference_count=0, store_pinned=False)
            db.add(row)
            db.flush()
        return row

    @staticmethod
    def _reload(db: Session, record: ContentRecord) -> ContentRecord | None:
        """Re-read ``record`` under the address lock.

        The caller loaded it before the lock was taken, so its pin flag may
        be stale. Returns None when another session already deleted the row.
        """
        db.flush()
        state = inspect(record)
        if not state.persistent:
            return record
        return (
            db.query(ContentRecord)
            .filter(ContentRecord.id == state.identity[0])
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )

    # -- serialization -----------------------------------------------------

    def _serialized(self, db: Session, content_address: str, record, operation):
        last_error: BaseException | None = None
        for attempt in range(self.max_attempts):
            try:
                with self._locks.hold(content_address, self.lock_timeout):
                    return operation()
            except ConcurrencyConflict as exc:
                last_error = exc
            except (OperationalError, IntegrityError) as exc:
                last_error = exc
                db.rollback()
                logger.warning(
                    "pin_ledger_retry address=%s attempt=%s/%s error=%s",
                    content_address,
                    attempt + 1,
                    self.max_attempts,
                    exc,
                )
                # A record that was never committed is gone after rollback.
                if record is not None and not inspect(record).persistent:
                    break
            if attempt < self.max_attempts - 1:
                time.sleep(self.retry_delay * (attempt + 1))
        raise ConcurrencyConflict(
            "Could not serialize pin bookkeeping",
            details={"address": content_address, "error": str(last_error)},
        )

    # -- transitions -------------------------------------------------------

    def request_pin(
        self, db: Session, record: ContentRecord, now: datetime | None = None
    ) -> PinResult:
        """Mark ``record`` pinned; pin in the store on the first reference.

        Commits the session on success. On store failure the session is
        rolled back and ``StoreUnavailableError`` propagates.
        """
        address = record.content_address
        return self._serialized(
            db, address, record, lambda: self._pin_locked(db, record, address, utcnow(now))
        )

    def _pin_locked(
        self, db: Session, record: ContentRecord, address: str, now: datetime
    ) -> PinResult:
        row = self._lock_row(db, address)
        record = self._reload(db, record)
        if record is None:
            db.rollback()
            raise NotFoundError("File not found", details={"address": address})
        if record.is_pinned:
            count = self.reference_count(db, address)
            db.commit()
            return PinResult(address, record.id, count, store_called=False, changed=False)

        others = self.reference_count(db, address, exclude_record_id=record.id)
        store_called = False
        if others == 0:
            try:
                self._store().pin(address)
            except StoreUnavailableError:
                observe_store_call("pin", "error")
                db.rollback()
                raise
            observe_store_call("pin", "ok")
            store_called = True
            row.last_pinned_at = now
            logger.info("pin_ledger_store_pin address=%s record_id=%s", address, record.id)

        record.is_pinned = True
        record.pinned_at = now
        row.reference_count = others + 1
        row.store_pinned = True
        record_id = record.id
        db.commit()
        return PinResult(address, record_id, others + 1, store_called=store_called, changed=True)

    def release_pin(
        self,
        db: Session,
        record: ContentRecord,
        delete_record: bool = False,
        now: datetime | None = None,
    ) -> UnpinResult:
        """Mark ``record`` unpinned (or delete it); unpin in the store when
        the last reference goes away.

        Releasing an already unpinned record is a no-op. Commits on success.
        """
        address = record.content_address
        return self._serialized(
            db,
            address,
            record,
            lambda: self._release_locked(db, record, address, delete_record, utcnow(now)),
        )

    def _release_locked(
        self,
        db: Session,
        record: ContentRecord,
        address: str,
        delete_record: bool,
        now: datetime,
    ) -> UnpinResult:
        row = self._lock_row(db, address)
        record_id = record.id
        record = self._reload(db, record)
        if record is None:
            count = self.reference_count(db, address)
            db.commit()
            return UnpinResult(address, record_id, count, store_called=False, changed=False)
        was_pinned = record.is_pinned
        if not was_pinned and not delete_record:
            count = self.reference_count(db, address)
            db.commit()
            return UnpinResult(address, record_id, count, store_called=False, changed=False)

        if was_pinned:
            record.is_pinned = False
            record.pinned_at = None
        if delete_record:
            db.delete(record)
        db.flush()

        remaining = self.reference_count(db, address)
        store_called = False
        if was_pinned and remaining == 0:
            try:
                self._store().unpin(address)
            except StoreUnavailableError:
                observe_store_call("unpin", "error")
                db.rollback()
                raise
            observe_store_call("unpin", "ok")
            store_called = True
            row.store_pinned = False
            row.last_unpinned_at = now
            logger.info("pin_ledger_store_unpin address=%s record_id=%s", address, record_id)
        row.reference_count = remaining
        db.commit()
        return UnpinResult(
            address,
            record_id,
            remaining,
            store_called=store_called,
            changed=True,
            record_deleted=delete_record,
            released=was_pinned,
        )

    # -- verification ------------------------------------------------------

    def verify(self, db: Session, content_address: str) -> bool:
        """True when the store's pin state matches the reference count."""
        count = self.reference_count(db, content_address)
        return self._store().is_pinned(content_address) == (count > 0)

    def reconcile(
        self, db: Session, addresses: list[str] | None = None, repair: bool = True
    ) -> list[dict]:
        if addresses is None:
            known = set(db.scalars(select(ContentRecord.content_address).distinct()))
            known.update(db.scalars(select(ContentAddress.address)))
            addresses = sorted(known)
        report = []
        for address in addresses:
            entry = self._serialized(
                db, address, None, lambda a=address: self._reconcile_locked(db, a, repair)
            )
            report.append(entry)
        return report

    def _reconcile_locked(self, db: Session, address: str, repair: bool) -> dict:
        row = self._lock_row(db, address)
        count = self.reference_count(db, address)
        expected = count > 0
        try:
            pinned = self._store().is_pinned(address)
            repaired = False
            if pinned != expected and repair:
                if expected:
                    self._store().pin(address)
                    observe_store_call("pin", "ok")
                else:
                    self._store().unpin(address)
                    observe_store_call("unpin", "ok")
                repaired = True
                pinned = expected
                logger.warning(
                    "pin_ledger_drift_repaired address=%s reference_count=%s", address, count
                )
        except StoreUnavailableError:
            db.rollback()
            raise
        row.reference_count = count
        row.store_pinned = pinned
        db.commit()
        return {
            "address": address,
            "reference_count": count,
            "store_pinned": pinned,
            "repaired": repaired,
        }


pin_ledger = PinLedger()

"""Upload-time duplicate name detection and resolution.

A batch of uploads into one folder is planned before anything is written:
each name is checked against active (non-trashed) siblings, matched
case-insensitively, and against names already claimed earlier in the same
batch. Conflicts are resolved per item, or for the rest of the batch through
``BatchResolver``.
"""

from __future__ import annotations

import enum
import os
import uuid
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.models.content import ContentRecord
from app.services.common import coerce_uuid
from app.services.exceptions import ConflictError, ValidationError


class ConflictAction(str, enum.Enum):
    replace = "REPLACE"
    keep_both = "KEEP_BOTH"
    cancel = "CANCEL"


class BatchMode(enum.Enum):
    per_item = "PER_ITEM"
    apply_all = "APPLY_ALL"
    cancel_all = "CANCEL_ALL"


@dataclass(frozen=True)
class Decision:
    """A caller's answer to one conflict prompt."""

    action: ConflictAction | None = None
    apply_to_all: bool = False
    cancel_all: bool = False

    def __post_init__(self):
        if self.cancel_all and (self.action not in (None, ConflictAction.cancel) or self.apply_to_all):
            raise ValidationError("cancel_all cannot be combined with another action")
        if not self.cancel_all and self.action is None:
            raise ValidationError("A conflict decision needs an action")


class BatchResolver:
    """PER_ITEM -> APPLY_ALL(action) | CANCEL_ALL. Both exits are final."""

    def __init__(self) -> None:
        self.mode = BatchMode.per_item
        self.action: ConflictAction | None = None

    def resolve(self, decision: Decision | None) -> ConflictAction | None:
        """Action for the current conflict, or None when the caller must be asked."""
        if self.mode == BatchMode.apply_all:
            return self.action
        if self.mode == BatchMode.cancel_all:
            return ConflictAction.cancel
        if decision is None:
            return None
        if decision.cancel_all:
            self.mode = BatchMode.cancel_all
            self.action = ConflictAction.cancel
            return ConflictAction.cancel
        if decision.apply_to_all:
            self.mode = BatchMode.apply_all
            self.action = decision.action
        return decision.action


def split_name(name: str) -> tuple[str, str]:
    stem, ext = os.path.splitext(name)
    return stem, ext


def numbered_name(name: str, n: int) -> str:
    stem, ext = split_name(name)
    return f"{stem} ({n}){ext}"


def next_available_name(name: str, taken: set[str]) -> str:
    """Smallest ``name (n).ext`` whose lowercase form is not in ``taken``."""
    n = 1
    while numbered_name(name, n).lower() in taken:
        n += 1
    return numbered_name(name, n)


@dataclass
class PlannedUpload:
    index: int
    filename: str
    final_name: str
    action: ConflictAction | None = None
    replaces_record_id: uuid.UUID | None = None
    skipped: bool = False
    superseded_by: int | None = None

    @property
    def conflicted(self) -> bool:
        return self.action is not None


@dataclass
class UnresolvedConflict:
    index: int
    filename: str
    existing_record_id: uuid.UUID | None
    suggested_name: str

    def as_dict(self) -> dict:
        return {
            "index": self.index,
            "filename": self.filename,
            "existing_record_id": str(self.existing_record_id) if self.existing_record_id else None,
            "suggested_name": self.suggested_name,
        }


@dataclass
class BatchPlan:
    items: list[PlannedUpload] = field(default_factory=list)
    unresolved: list[UnresolvedConflict] = field(default_factory=list)

    @property
    def accepted(self) -> list[PlannedUpload]:
        return [item for item in self.items if not item.skipped]


class DuplicateResolver:
    @staticmethod
    def active_siblings(db: Session, owner_id, parent_folder_id) -> dict[str, ContentRecord]:
        query = (
            db.query(ContentRecord)
            .filter(ContentRecord.owner_id == coerce_uuid(owner_id))
            .filter(ContentRecord.is_deleted.is_(False))
        )
        if parent_folder_id is None:
            query = query.filter(ContentRecord.parent_folder_id.is_(None))
        else:
            query = query.filter(ContentRecord.parent_folder_id == coerce_uuid(parent_folder_id))
        return {record.filename.lower(): record for record in query.all()}

    def find_conflict(
        self, db: Session, owner_id, parent_folder_id, name: str, exclude_record_id=None
    ) -> ContentRecord | None:
        record = self.active_siblings(db, owner_id, parent_folder_id).get(name.lower())
        if record is not None and record.id == exclude_record_id:
            return None
        return record

    def suggest_name(self, db: Session, owner_id, parent_folder_id, name: str) -> str:
        taken = set(self.active_siblings(db, owner_id, parent_folder_id))
        return next_available_name(name, taken)

    def plan(
        self,
        db: Session,
        owner_id,
        parent_folder_id,
        filenames: list[str],
        decisions: dict[int, Decision] | None = None,
    ) -> BatchPlan:
        """Resolve every name in the batch; nothing is written."""
        decisions = decisions or {}
        existing = self.active_siblings(db, owner_id, parent_folder_id)
        claimed: dict[str, int] = {}
        resolver = BatchResolver()
        plan = BatchPlan()

        for index, name in enumerate(filenames):
            key = name.lower()
            existing_record = existing.get(key)
            pending_index = claimed.get(key)
            item = PlannedUpload(index=index, filename=name, final_name=name)
            plan.items.append(item)
            if existing_record is None and pending_index is None:
                claimed[key] = index
                continue

            action = resolver.resolve(decisions.get(index))
            if action is None:
                item.skipped = True
                plan.unresolved.append(
                    UnresolvedConflict(
                        index=index,
                        filename=name,
                        existing_record_id=existing_record.id if existing_record else None,
                        suggested_name=next_available_name(name, set(existing) | set(claimed)),
                    )
                )
                continue

            item.action = action
            if action == ConflictAction.cancel:
                item.skipped = True
            elif action == ConflictAction.keep_both:
                item.final_name = next_available_name(name, set(existing) | set(claimed))
                claimed[item.final_name.lower()] = index
            else:
                if pending_index is not None:
                    earlier = plan.items[pending_index]
                    earlier.skipped = True
                    earlier.superseded_by = index
                item.replaces_record_id = existing_record.id if existing_record else None
                claimed[key] = index
        return plan

    def plan_or_raise(
        self,
        db: Session,
        owner_id,
        parent_folder_id,
        filenames: list[str],
        decisions: dict[int, Decision] | None = None,
    ) -> BatchPlan:
        plan = self.plan(db, owner_id, parent_folder_id, filenames, decisions)
        if plan.unresolved:
            raise ConflictError(
                "Some files already exist in this folder",
                details={"conflicts": [conflict.as_dict() for conflict in plan.unresolved]},
            )
        return plan


duplicates = DuplicateResolver()

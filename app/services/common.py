"""Common helper functions for service layer.

This module provides reusable utilities for:
- UUID handling
- Timestamp normalisation
- Owned entity retrieval
- Monetary rounding
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, TypeVar

from app.services.exceptions import NotFoundError, OwnershipError, ValidationError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid identifier: {value}") from exc


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utcnow(now: datetime | None = None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(UTC)


def get_owned(db: Session, model: type[T], entity_id, owner_id, label: str = "Item") -> T:
    """Load an entity by id and check it belongs to ``owner_id``.

    Raises:
        NotFoundError: no row with that id
        OwnershipError: the row belongs to someone else
    """
    entity = db.get(model, coerce_uuid(entity_id))
    if not entity:
        raise NotFoundError(f"{label} not found")
    if entity.owner_id != coerce_uuid(owner_id):
        raise OwnershipError(f"{label} does not belong to the caller")
    return entity


def round_money(value: Decimal) -> Decimal:
    """Round a monetary value to 2 decimal places using ROUND_HALF_UP."""
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

"""Usage metering: pinned bytes per owner and the cost they incur."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.content import ContentRecord
from app.services.common import coerce_uuid, round_money

BYTES_PER_GB = Decimal(1024**3)


@dataclass(frozen=True)
class UsageSummary:
    pinned_bytes: int
    pinned_gb: Decimal
    free_tier_gb: Decimal
    billable_gb: Decimal
    monthly_cost_usd: Decimal
    charge_amount: Decimal
    currency: str

    @property
    def exceeds_free_tier(self) -> bool:
        return self.pinned_gb > self.free_tier_gb


class UsageMeter:
    def __init__(
        self,
        free_tier_gb: Decimal | None = None,
        cost_per_gb_usd: Decimal | None = None,
        usd_to_settlement: Decimal | None = None,
        min_charge: Decimal | None = None,
        currency: str | None = None,
    ) -> None:
        self.free_tier_gb = Decimal(
            settings.free_tier_gb if free_tier_gb is None else free_tier_gb
        )
        self.cost_per_gb_usd = Decimal(
            settings.cost_per_gb_usd if cost_per_gb_usd is None else cost_per_gb_usd
        )
        self.usd_to_settlement = Decimal(
            settings.usd_to_inr if usd_to_settlement is None else usd_to_settlement
        )
        self.min_charge = Decimal(settings.min_charge_inr if min_charge is None else min_charge)
        self.currency = currency or settings.settlement_currency

    @staticmethod
    def pinned_bytes(db: Session, owner_id) -> int:
        """Bytes held by the owner's pinned records.

        Not deduplicated by content address: every owner pays for their own
        pinned copies. Trashed records stay billed until permanently removed.
        """
        total = db.scalar(
            select(func.coalesce(func.sum(ContentRecord.size), 0))
            .where(ContentRecord.owner_id == coerce_uuid(owner_id))
            .where(ContentRecord.is_pinned.is_(True))
        )
        return int(total or 0)

    @staticmethod
    def stored_bytes(db: Session, owner_id) -> int:
        """Bytes of the owner's non-trashed records, pinned or not."""
        total = db.scalar(
            select(func.coalesce(func.sum(ContentRecord.size), 0))
            .where(ContentRecord.owner_id == coerce_uuid(owner_id))
            .where(ContentRecord.is_deleted.is_(False))
        )
        return int(total or 0)

    @staticmethod
    def to_gb(size_bytes: int) -> Decimal:
        return Decimal(int(size_bytes)) / BYTES_PER_GB

    def exceeds_free_tier(self, pinned_bytes: int) -> bool:
        return self.to_gb(pinned_bytes) > self.free_tier_gb

    def monthly_cost(self, pinned_bytes: int) -> Decimal:
        """Unrounded USD cost for one month; zero at or under the free tier."""
        gb = self.to_gb(pinned_bytes)
        if gb <= self.free_tier_gb:
            return Decimal("0")
        return (gb - self.free_tier_gb) * self.cost_per_gb_usd

    def charge_amount(self, cost_usd: Decimal) -> Decimal:
        """Settlement amount for ``cost_usd``, floored at the minimum charge."""
        if cost_usd <= 0:
            return Decimal("0.00")
        amount = round_money(cost_usd * self.usd_to_settlement)
        return max(amount, round_money(self.min_charge))

    def summarize(self, db: Session, owner_id) -> UsageSummary:
        pinned = self.pinned_bytes(db, owner_id)
        gb = self.to_gb(pinned)
        cost = self.monthly_cost(pinned)
        return UsageSummary(
            pinned_bytes=pinned,
            pinned_gb=gb,
            free_tier_gb=self.free_tier_gb,
            billable_gb=max(gb - self.free_tier_gb, Decimal("0")),
            monthly_cost_usd=cost,
            charge_amount=self.charge_amount(cost),
            currency=self.currency,
        )


usage_meter = UsageMeter()

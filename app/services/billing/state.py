"""Per-user billing state machine and access gate."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import ACCESS_DECISIONS
from app.models.billing import BillingInfo, BillingState, Subscription
from app.models.user import User
from app.services.billing import cycle
from app.services.common import as_utc, coerce_uuid, utcnow
from app.services.exceptions import (
    BillingBlockedError,
    ConcurrencyConflict,
    NotFoundError,
    ReasonCode,
)
from app.services.locks import KeyedLocks
from app.services.usage import UsageMeter, UsageSummary, usage_meter

logger = logging.getLogger(__name__)

FREE_TIER_WARNING = (
    "Pinned storage exceeds the free tier. Add a payment method before your billing day "
    "to avoid interruption."
)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    state: BillingState
    reason: ReasonCode
    warning: str | None
    usage: UsageSummary
    billing_day: int
    next_billing_at: datetime
    billing_period_start: datetime
    billing_period_end: datetime
    services_blocked: bool
    payment_method_added: bool
    payment_info_received_at: datetime | None = None


def decide(
    exceeds_free_tier: bool, payment_method_added: bool, billing_day_today: bool
) -> tuple[BillingState, bool, ReasonCode]:
    """Pure state decision. Denied only when over the free tier, unpaid,
    and today is the billing day."""
    if payment_method_added:
        return BillingState.paid_active, True, ReasonCode.payment_active
    if not exceeds_free_tier:
        return BillingState.within_free_tier, True, ReasonCode.within_free_tier
    if billing_day_today:
        return BillingState.billing_due_blocked, False, ReasonCode.billing_due_unpaid
    return BillingState.exceeds_free_tier_unblocked, True, ReasonCode.free_tier_exceeded


class BillingStateMachine:
    def __init__(
        self,
        meter: UsageMeter | None = None,
        lock_timeout: float | None = None,
        max_attempts: int | None = None,
        retry_delay: float = 0.05,
    ) -> None:
        self.meter = meter or usage_meter
        self.lock_timeout = lock_timeout or settings.lock_timeout_seconds
        self.max_attempts = max(max_attempts or settings.lock_max_attempts, 1)
        self.retry_delay = retry_delay
        self._locks = KeyedLocks("billing_account")

    def serialized(self, db: Session, owner_id, operation):
        """Run ``operation`` as the only writer for ``owner_id``'s billing rows."""
        key = str(coerce_uuid(owner_id))
        last_error: BaseException | None = None
        for attempt in range(self.max_attempts):
            try:
                with self._locks.hold(key, self.lock_timeout):
                    return operation()
            except ConcurrencyConflict as exc:
                last_error = exc
            except (OperationalError, IntegrityError) as exc:
                last_error = exc
                db.rollback()
                logger.warning(
                    "billing_state_retry owner_id=%s attempt=%s/%s error=%s",
                    key,
                    attempt + 1,
                    self.max_attempts,
                    exc,
                )
            if attempt < self.max_attempts - 1:
                time.sleep(self.retry_delay * (attempt + 1))
        raise ConcurrencyConflict(
            "Could not serialize billing update",
            details={"owner_id": key, "error": str(last_error)},
        )

    @staticmethod
    def _user(db: Session, owner_id) -> User:
        user = db.get(User, coerce_uuid(owner_id))
        if not user:
            raise NotFoundError("User not found")
        return user

    def ensure_account(
        self, db: Session, owner_id, now: datetime | None = None
    ) -> tuple[Subscription, BillingInfo]:
        """Load (locking) or lazily create the subscription and billing rows.

        Does not commit.
        """
        now = utcnow(now)
        owner_id = coerce_uuid(owner_id)
        info = (
            db.query(BillingInfo)
            .filter(BillingInfo.owner_id == owner_id)
            .with_for_update()
            .first()
        )
        subscription = (
            db.query(Subscription)
            .filter(Subscription.owner_id == owner_id)
            .with_for_update()
            .first()
        )
        if subscription is None:
            user = self._user(db, owner_id)
            billing_day = cycle.billing_day_for(as_utc(user.created_at) or now)
            subscription = Subscription(
                owner_id=owner_id,
                billing_day=billing_day,
                next_billing_at=cycle.upcoming_billing_date(billing_day, now),
            )
            db.add(subscription)
            logger.info(
                "billing_subscription_created owner_id=%s billing_day=%s", owner_id, billing_day
            )
        if info is None:
            info = BillingInfo(owner_id=owner_id, payment_method_added=False, services_blocked=False)
            db.add(info)
        db.flush()
        return subscription, info

    def _evaluate_locked(self, db: Session, owner_id, now: datetime) -> AccessDecision:
        subscription, info = self.ensure_account(db, owner_id, now)
        usage = self.meter.summarize(db, owner_id)
        billing_day = subscription.billing_day

        next_billing_at = as_utc(subscription.next_billing_at)
        if next_billing_at < cycle.start_of_day(now):
            subscription.next_billing_at = cycle.upcoming_billing_date(billing_day, now)
            next_billing_at = subscription.next_billing_at

        state, allowed, reason = decide(
            usage.exceeds_free_tier,
            info.payment_method_added,
            cycle.is_billing_day(billing_day, now),
        )
        blocked = state == BillingState.billing_due_blocked
        if info.services_blocked != blocked:
            info.services_blocked = blocked
            info.blocked_at = now if blocked else None
            logger.info(
                "billing_services_blocked_changed owner_id=%s blocked=%s state=%s",
                owner_id,
                blocked,
                state.value,
            )
        period_start, period_end = cycle.billing_period(billing_day, now)
        decision = AccessDecision(
            allowed=allowed,
            state=state,
            reason=reason,
            warning=FREE_TIER_WARNING
            if state == BillingState.exceeds_free_tier_unblocked
            else None,
            usage=usage,
            billing_day=billing_day,
            next_billing_at=next_billing_at,
            billing_period_start=period_start,
            billing_period_end=period_end,
            services_blocked=blocked,
            payment_method_added=info.payment_method_added,
            payment_info_received_at=as_utc(info.payment_info_received_at),
        )
        db.commit()
        ACCESS_DECISIONS.labels(state=state.value, allowed=str(allowed).lower()).inc()
        return decision

    def evaluate(self, db: Session, owner_id, now: datetime | None = None) -> AccessDecision:
        """Evaluate and persist the owner's billing state. Commits."""
        now = utcnow(now)
        return self.serialized(db, owner_id, lambda: self._evaluate_locked(db, owner_id, now))

    def require_access(self, db: Session, owner_id, now: datetime | None = None) -> AccessDecision:
        """Gate for privileged operations (pin, upload)."""
        decision = self.evaluate(db, owner_id, now)
        if not decision.allowed:
            raise BillingBlockedError(
                details={
                    "state": decision.state.value,
                    "billing_day": decision.billing_day,
                    "monthly_cost_usd": str(decision.usage.monthly_cost_usd),
                    "charge_amount": str(decision.usage.charge_amount),
                    "currency": decision.usage.currency,
                }
            )
        return decision

    def apply_paid(self, db: Session, owner_id, now: datetime) -> None:
        """Record a confirmed payment. Caller holds the owner lock and commits."""
        subscription, info = self.ensure_account(db, owner_id, now)
        if not info.payment_method_added:
            info.payment_method_added = True
            info.payment_info_received_at = now
        info.services_blocked = False
        info.blocked_at = None
        advanced = cycle.next_billing_date(subscription.billing_day, now)
        current = as_utc(subscription.next_billing_at)
        if current is None or advanced > current:
            subscription.next_billing_at = advanced
        subscription.last_billed_at = now
        logger.info(
            "billing_payment_applied owner_id=%s next_billing_at=%s",
            owner_id,
            subscription.next_billing_at,
        )


billing_state = BillingStateMachine()

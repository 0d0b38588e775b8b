"""Payment order lifecycle.

A polled status fetch and a signed provider notification both end in
``PaymentOrders.apply_status``, which is idempotent: terminal orders never
change again and a repeated PAID is a no-op.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.metrics import PAYMENT_TRANSITIONS
from app.models.activity import ActivityAction
from app.models.billing import BillingState, PaymentOrder, PaymentOrderStatus
from app.models.user import User
from app.services.activity import activities
from app.services.billing.state import BillingStateMachine, billing_state
from app.services.common import coerce_uuid, utcnow
from app.services.exceptions import (
    InvalidSignatureError,
    NotFoundError,
    OwnershipError,
    ReasonCode,
    ValidationError,
)
from app.services.payment_provider import (
    Customer,
    PaymentProvider,
    generate_order_id,
    get_payment_provider,
    map_order_status,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {
    PaymentOrderStatus.paid,
    PaymentOrderStatus.failed,
    PaymentOrderStatus.cancelled,
}
_CHARGEABLE_STATES = {BillingState.billing_due_blocked, BillingState.exceeds_free_tier_unblocked}


def parse_webhook_event(payload: dict) -> tuple[str | None, str | None, str | None]:
    """Return ``(order_id, order_status, payment_status)``.

    Accepts the provider's nested shape (``data.order`` / ``data.payment``)
    and the flat ``orderId``/``orderStatus``/``paymentStatus`` shape.
    """
    data = payload.get("data")
    if isinstance(data, dict):
        order = data.get("order") or {}
        payment = data.get("payment") or {}
        return (
            order.get("order_id"),
            order.get("order_status"),
            payment.get("payment_status"),
        )
    return payload.get("orderId"), payload.get("orderStatus"), payload.get("paymentStatus")


class PaymentOrders:
    def __init__(
        self,
        provider: PaymentProvider | None = None,
        state_machine: BillingStateMachine | None = None,
    ) -> None:
        self.provider = provider
        self.state_machine = state_machine or billing_state

    def _provider(self) -> PaymentProvider:
        if self.provider is None:
            self.provider = get_payment_provider()
        return self.provider

    @staticmethod
    def get(db: Session, owner_id, order_id) -> PaymentOrder:
        """Look up an order by local id or merchant order id."""
        order = None
        try:
            order = db.get(PaymentOrder, coerce_uuid(order_id))
        except ValidationError:
            order = None
        if order is None:
            order = (
                db.query(PaymentOrder)
                .filter(PaymentOrder.external_order_id == str(order_id))
                .first()
            )
        if not order:
            raise NotFoundError("Payment order not found")
        if order.owner_id != coerce_uuid(owner_id):
            raise OwnershipError("Payment order does not belong to the caller")
        return order

    @staticmethod
    def latest(db: Session, owner_id) -> PaymentOrder | None:
        return (
            db.query(PaymentOrder)
            .filter(PaymentOrder.owner_id == coerce_uuid(owner_id))
            .order_by(PaymentOrder.created_at.desc())
            .first()
        )

    def create(self, db: Session, user: User, now: datetime | None = None) -> PaymentOrder:
        """Create a PENDING order for the current charge.

        Only warned or blocked users have something to pay. The provider is
        called first; nothing is persisted if it fails.
        """
        now = utcnow(now)
        decision = self.state_machine.evaluate(db, user.id, now)
        charge = decision.usage.charge_amount
        if decision.state not in _CHARGEABLE_STATES or charge <= 0:
            raise ValidationError(
                "No payment is due for the current usage",
                code=ReasonCode.no_charge_due,
                details={"state": decision.state.value},
            )
        external_order_id = generate_order_id(now)
        provider_order = self._provider().create_order(
            external_order_id,
            charge,
            decision.usage.currency,
            Customer(
                customer_id=str(user.id),
                email=user.email,
                name=user.display_name,
            ),
        )
        order = PaymentOrder(
            owner_id=user.id,
            external_order_id=external_order_id,
            provider_order_id=provider_order.provider_order_id,
            payment_session_id=provider_order.payment_session_id,
            payment_link=provider_order.payment_link,
            amount=charge,
            currency=decision.usage.currency,
            cost_usd=decision.usage.monthly_cost_usd,
            pinned_bytes=decision.usage.pinned_bytes,
            status=PaymentOrderStatus.pending,
            billing_period_start=decision.billing_period_start,
            billing_period_end=decision.billing_period_end,
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        logger.info(
            "payment_order_created owner_id=%s order_id=%s amount=%s %s",
            user.id,
            external_order_id,
            charge,
            order.currency,
        )
        return order

    def apply_status(
        self,
        db: Session,
        order_id,
        status: PaymentOrderStatus,
        source: str,
        now: datetime | None = None,
    ) -> tuple[PaymentOrder, bool]:
        """Apply a provider-reported status. Returns ``(order, changed)``."""
        now = utcnow(now)
        order = db.get(PaymentOrder, coerce_uuid(order_id))
        if not order:
            raise NotFoundError("Payment order not found")
        owner_id = order.owner_id
        return self.state_machine.serialized(
            db,
            owner_id,
            lambda: self._apply_locked(db, order.id, status, source, now),
        )

    def _apply_locked(
        self,
        db: Session,
        order_pk,
        status: PaymentOrderStatus,
        source: str,
        now: datetime,
    ) -> tuple[PaymentOrder, bool]:
        order = (
            db.query(PaymentOrder)
            .filter(PaymentOrder.id == order_pk)
            .with_for_update()
            .populate_existing()
            .one()
        )
        if order.status == status or status == PaymentOrderStatus.pending:
            db.commit()
            return order, False
        if order.status in TERMINAL_STATUSES:
            logger.info(
                "payment_order_transition_ignored order_id=%s current=%s reported=%s source=%s",
                order.external_order_id,
                order.status.value,
                status.value,
                source,
            )
            db.commit()
            return order, False

        order.status = status
        if status == PaymentOrderStatus.paid:
            order.paid_at = now
            self.state_machine.apply_paid(db, order.owner_id, now)
        activities.record(
            db,
            order.owner_id,
            ActivityAction.payment,
            details={
                "order_id": order.external_order_id,
                "status": status.value,
                "amount": str(order.amount),
                "source": source,
            },
        )
        db.commit()
        PAYMENT_TRANSITIONS.labels(status=status.value, source=source).inc()
        logger.info(
            "payment_order_transition order_id=%s status=%s source=%s",
            order.external_order_id,
            status.value,
            source,
        )
        return order, True

    def refresh(self, db: Session, user: User, order_id, now: datetime | None = None) -> PaymentOrder:
        """Poll the provider and apply whatever it reports."""
        order = self.get(db, user.id, order_id)
        if order.status in TERMINAL_STATUSES:
            return order
        provider_order = self._provider().fetch_order(order.external_order_id)
        order, _ = self.apply_status(db, order.id, provider_order.status, "poll", now)
        return order

    def handle_webhook(
        self,
        db: Session,
        body: bytes,
        signature: str | None,
        timestamp: str | None,
        now: datetime | None = None,
    ) -> dict:
        """Verify and apply a provider notification.

        Unknown orders are acknowledged without any state change so the
        provider stops retrying.
        """
        if not self._provider().verify_webhook_signature(signature or "", body, timestamp or ""):
            logger.warning("payment_webhook_invalid_signature")
            raise InvalidSignatureError()
        try:
            payload = json.loads(body)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        external_order_id, order_status, payment_status = parse_webhook_event(payload)
        if not external_order_id:
            raise ValidationError("Webhook payload has no order id")
        order = (
            db.query(PaymentOrder)
            .filter(PaymentOrder.external_order_id == str(external_order_id))
            .first()
        )
        if not order:
            logger.info("payment_webhook_unknown_order order_id=%s", external_order_id)
            return {"status": "ignored", "order_id": external_order_id}

        status = map_order_status(order_status, payment_status)
        order, changed = self.apply_status(db, order.id, status, "webhook", now)
        return {
            "status": "processed" if changed else "unchanged",
            "order_id": order.external_order_id,
            "order_status": order.status.value,
        }


payment_orders = PaymentOrders()

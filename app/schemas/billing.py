from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.billing import BillingState, PaymentOrderStatus
from app.services.billing.state import AccessDecision
from app.services.common import round_money


class AccessCheckRead(BaseModel):
    allowed: bool
    state: BillingState
    reason: str
    warning: str | None = None
    services_blocked: bool
    payment_method_added: bool
    pinned_bytes: int
    pinned_gb: Decimal
    free_tier_gb: Decimal
    monthly_cost_usd: Decimal
    charge_amount: Decimal
    currency: str
    billing_day: int
    next_billing_at: datetime

    @classmethod
    def _fields_from(cls, decision: AccessDecision) -> dict:
        usage = decision.usage
        return {
            "allowed": decision.allowed,
            "state": decision.state,
            "reason": decision.reason.value,
            "warning": decision.warning,
            "services_blocked": decision.services_blocked,
            "payment_method_added": decision.payment_method_added,
            "pinned_bytes": usage.pinned_bytes,
            "pinned_gb": usage.pinned_gb.quantize(Decimal("0.001")),
            "free_tier_gb": usage.free_tier_gb,
            "monthly_cost_usd": round_money(usage.monthly_cost_usd),
            "charge_amount": usage.charge_amount,
            "currency": usage.currency,
            "billing_day": decision.billing_day,
            "next_billing_at": decision.next_billing_at,
        }

    @classmethod
    def from_decision(cls, decision: AccessDecision) -> "AccessCheckRead":
        return cls(**cls._fields_from(decision))


class PaymentOrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_order_id: str
    payment_session_id: str | None = None
    payment_link: str | None = None
    amount: Decimal
    currency: str
    cost_usd: Decimal
    pinned_bytes: int
    status: PaymentOrderStatus
    billing_period_start: datetime
    billing_period_end: datetime
    paid_at: datetime | None = None
    created_at: datetime


class BillingStatusRead(AccessCheckRead):
    billing_period_start: datetime
    billing_period_end: datetime
    payment_info_received_at: datetime | None = None
    latest_order: PaymentOrderRead | None = None

    @classmethod
    def from_decision(cls, decision: AccessDecision, latest_order=None) -> "BillingStatusRead":
        return cls(
            **cls._fields_from(decision),
            billing_period_start=decision.billing_period_start,
            billing_period_end=decision.billing_period_end,
            payment_info_received_at=decision.payment_info_received_at,
            latest_order=PaymentOrderRead.model_validate(latest_order) if latest_order else None,
        )


class WebhookAck(BaseModel):
    status: str
    order_id: str | None = None
    order_status: PaymentOrderStatus | None = None

"""Billing services package.

Usage metering feeds the per-user state machine, which gates privileged
operations and settles payment orders:

    from app.services.billing import billing_state, payment_orders
    decision = billing_state.evaluate(db, user.id)
"""

from app.services.billing.orders import PaymentOrders, parse_webhook_event, payment_orders
from app.services.billing.state import (
    AccessDecision,
    BillingStateMachine,
    billing_state,
    decide,
)

__all__ = [
    "AccessDecision",
    "BillingStateMachine",
    "PaymentOrders",
    "billing_state",
    "decide",
    "parse_webhook_event",
    "payment_orders",
]

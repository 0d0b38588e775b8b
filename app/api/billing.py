from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_db, limiter
from app.config import settings
from app.models.user import User
from app.schemas.billing import (
    AccessCheckRead,
    BillingStatusRead,
    PaymentOrderRead,
    WebhookAck,
)
from app.services.billing import billing_state, payment_orders

router = APIRouter(tags=["billing"])

# Provider callbacks carry no user token; the signature is the credential.
webhook_router = APIRouter(tags=["billing"])


@router.get("/billing/access-check", response_model=AccessCheckRead)
def access_check(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    decision = billing_state.evaluate(db, current_user.id)
    return AccessCheckRead.from_decision(decision)


@router.get("/billing/status", response_model=BillingStatusRead)
def billing_status(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    decision = billing_state.evaluate(db, current_user.id)
    latest = payment_orders.latest(db, current_user.id)
    return BillingStatusRead.from_decision(decision, latest)


@router.post(
    "/payments/orders",
    response_model=PaymentOrderRead,
    status_code=status.HTTP_201_CREATED,
)
def create_payment_order(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return payment_orders.create(db, current_user)


@router.get("/payments/orders/{order_id}", response_model=PaymentOrderRead)
def get_payment_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return payment_orders.refresh(db, current_user, order_id)


@webhook_router.post("/payments/webhook", response_model=WebhookAck)
@limiter.limit(settings.webhook_rate_limit)
async def payment_webhook(
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    x_webhook_timestamp: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    body = await request.body()
    return await run_in_threadpool(
        payment_orders.handle_webhook,
        db,
        body,
        x_webhook_signature,
        x_webhook_timestamp,
    )

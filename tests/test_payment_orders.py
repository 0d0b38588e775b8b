import json
import threading
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db import Base
from app.models.activity import ActivityAction, ActivityLog
from app.models.billing import BillingInfo, BillingState, PaymentOrder, PaymentOrderStatus
from app.services.billing.orders import PaymentOrders, parse_webhook_event
from app.services.billing.state import BillingStateMachine
from app.services.exceptions import (
    InvalidSignatureError,
    OwnershipError,
    PaymentProviderError,
    ReasonCode,
    ValidationError,
)
from tests.conftest import GIB, make_record, make_user
from tests.mocks import FakePaymentProvider

WARNED_AT = datetime(2026, 3, 5, 10, 0, tzinfo=UTC)
BILLING_DAY = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)


@pytest.fixture()
def heavy_user(db_session, user):
    make_record(db_session, user, "bafybig", size=7 * GIB, is_pinned=True)
    return user


def _webhook_body(order_id: str, payment_status: str = "SUCCESS", order_status: str = "PAID") -> bytes:
    return json.dumps(
        {
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {
                "order": {"order_id": order_id, "order_status": order_status},
                "payment": {"payment_status": payment_status},
            },
        }
    ).encode()


def test_no_order_within_free_tier(db_session, orders, user):
    with pytest.raises(ValidationError) as excinfo:
        orders.create(db_session, user, WARNED_AT)

    assert excinfo.value.code == ReasonCode.no_charge_due
    assert db_session.query(PaymentOrder).count() == 0


def test_create_order_for_warned_user(db_session, orders, provider, heavy_user):
    order = orders.create(db_session, heavy_user, WARNED_AT)

    assert order.status == PaymentOrderStatus.pending
    assert order.amount == Decimal("66.40")
    assert order.currency == "INR"
    assert order.pinned_bytes == 7 * GIB
    assert order.external_order_id.startswith("CIDV-20260305")
    assert order.payment_session_id == f"session_{order.external_order_id}"
    assert provider.created[0][1] == Decimal("66.40")


def test_provider_failure_persists_nothing(db_session, orders, provider, heavy_user):
    provider.fail_create = True

    with pytest.raises(PaymentProviderError):
        orders.create(db_session, heavy_user, WARNED_AT)

    assert db_session.query(PaymentOrder).count() == 0


def test_paid_twice_applies_once(db_session, orders, heavy_user):
    order = orders.create(db_session, heavy_user, BILLING_DAY)

    _, first = orders.apply_status(db_session, order.id, PaymentOrderStatus.paid, "poll", BILLING_DAY)
    _, second = orders.apply_status(
        db_session, order.id, PaymentOrderStatus.paid, "webhook", BILLING_DAY
    )

    assert first is True
    assert second is False
    payments = (
        db_session.query(ActivityLog)
        .filter(ActivityLog.action == ActivityAction.payment)
        .count()
    )
    assert payments == 1
    decision = orders.state_machine.evaluate(db_session, heavy_user.id, BILLING_DAY)
    assert decision.state == BillingState.paid_active


def test_terminal_order_never_changes(db_session, orders, heavy_user):
    order = orders.create(db_session, heavy_user, WARNED_AT)
    orders.apply_status(db_session, order.id, PaymentOrderStatus.failed, "webhook", WARNED_AT)

    updated, changed = orders.apply_status(
        db_session, order.id, PaymentOrderStatus.paid, "webhook", WARNED_AT
    )

    assert changed is False
    assert updated.status == PaymentOrderStatus.failed


def test_refresh_polls_provider(db_session, orders, provider, heavy_user):
    order = orders.create(db_session, heavy_user, WARNED_AT)
    provider.statuses[order.external_order_id] = PaymentOrderStatus.paid

    refreshed = orders.refresh(db_session, heavy_user, order.external_order_id, WARNED_AT)

    assert refreshed.status == PaymentOrderStatus.paid
    assert provider.fetch_calls == [order.external_order_id]


def test_refresh_skips_provider_for_terminal_order(db_session, orders, provider, heavy_user):
    order = orders.create(db_session, heavy_user, WARNED_AT)
    orders.apply_status(db_session, order.id, PaymentOrderStatus.cancelled, "poll", WARNED_AT)

    orders.refresh(db_session, heavy_user, str(order.id), WARNED_AT)

    assert provider.fetch_calls == []


def test_order_of_other_user_is_rejected(db_session, orders, heavy_user, other_user):
    order = orders.create(db_session, heavy_user, WARNED_AT)

    with pytest.raises(OwnershipError):
        orders.get(db_session, other_user.id, order.id)


def test_webhook_rejects_bad_signature(db_session, orders, heavy_user):
    order = orders.create(db_session, heavy_user, WARNED_AT)

    with pytest.raises(InvalidSignatureError):
        orders.handle_webhook(
            db_session, _webhook_body(order.external_order_id), "forged", "1700000000"
        )

    db_session.refresh(order)
    assert order.status == PaymentOrderStatus.pending


def test_webhook_marks_order_paid_once(db_session, orders, provider, heavy_user):
    order = orders.create(db_session, heavy_user, BILLING_DAY)
    body = _webhook_body(order.external_order_id)

    first = orders.handle_webhook(
        db_session, body, provider.valid_signature, "1700000000", BILLING_DAY
    )
    second = orders.handle_webhook(
        db_session, body, provider.valid_signature, "1700000000", BILLING_DAY
    )

    assert first["status"] == "processed"
    assert first["order_status"] == "PAID"
    assert second["status"] == "unchanged"


def test_webhook_for_unknown_order_is_acknowledged(db_session, orders, provider):
    result = orders.handle_webhook(
        db_session, _webhook_body("CIDV-unknown"), provider.valid_signature, "1700000000"
    )

    assert result == {"status": "ignored", "order_id": "CIDV-unknown"}


def test_webhook_rejects_non_json_body(db_session, orders, provider):
    with pytest.raises(ValidationError):
        orders.handle_webhook(db_session, b"not-json", provider.valid_signature, "1700000000")


def test_parse_webhook_event_flat_shape():
    payload = {"orderId": "CIDV-1", "orderStatus": "ACTIVE", "paymentStatus": "USER_DROPPED"}

    assert parse_webhook_event(payload) == ("CIDV-1", "ACTIVE", "USER_DROPPED")


def test_poll_and_webhook_racing_to_paid_apply_once(tmp_path, meter):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'orders.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    machine = BillingStateMachine(meter=meter, lock_timeout=10, max_attempts=5, retry_delay=0.01)
    service = PaymentOrders(provider=FakePaymentProvider(), state_machine=machine)

    setup = Session()
    owner = make_user(setup)
    make_record(setup, owner, "bafybig", size=7 * GIB, is_pinned=True)
    order_id = service.create(setup, owner, BILLING_DAY).id
    owner_id = owner.id
    setup.close()

    changes: list[bool] = []
    errors: list[Exception] = []
    start = threading.Barrier(2)

    def worker(source):
        session = Session()
        try:
            start.wait()
            _, changed = service.apply_status(
                session, order_id, PaymentOrderStatus.paid, source, BILLING_DAY
            )
            changes.append(changed)
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(source,)) for source in ("poll", "webhook")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(changes) == [False, True]
    check = Session()
    try:
        assert check.get(PaymentOrder, order_id).status == PaymentOrderStatus.paid
        payments = (
            check.query(ActivityLog)
            .filter(ActivityLog.action == ActivityAction.payment)
            .count()
        )
        assert payments == 1
        info = check.query(BillingInfo).filter_by(owner_id=owner_id).one()
        assert info.services_blocked is False
        assert info.payment_method_added is True
    finally:
        check.close()
    engine.dispose()

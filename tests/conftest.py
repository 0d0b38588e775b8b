import os
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.models.content import ContentRecord, FolderRecord
from app.models.user import User
from app.services.billing.orders import PaymentOrders
from app.services.billing.state import BillingStateMachine
from app.services.content import ContentService
from app.services.pin_ledger import PinLedger
from app.services.trash import TrashManager
from app.services.usage import UsageMeter
from tests.mocks import FakeContentStore, FakePaymentProvider

GIB = 1024**3


class _JoseDateTimeProxy:
    def utcnow(self):
        from datetime import datetime, timezone

        return datetime.now(timezone.utc)

    def now(self, tz: Any | None = None):
        from datetime import datetime

        return datetime.now(tz)

    def __getattr__(self, name: str) -> Any:
        from datetime import datetime

        return getattr(datetime, name)


@pytest.fixture()
def _patch_jose_datetime(monkeypatch):
    import jose.jwt as jose_jwt

    monkeypatch.setattr(jose_jwt, "datetime", _JoseDateTimeProxy(), raising=False)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store():
    return FakeContentStore()


@pytest.fixture()
def provider():
    return FakePaymentProvider()


@pytest.fixture()
def ledger(store):
    return PinLedger(store=store, lock_timeout=2, max_attempts=3, retry_delay=0)


@pytest.fixture()
def meter():
    return UsageMeter(
        free_tier_gb=Decimal("5"),
        cost_per_gb_usd=Decimal("0.40"),
        usd_to_settlement=Decimal("83"),
        min_charge=Decimal("1"),
        currency="INR",
    )


@pytest.fixture()
def state_machine(meter):
    return BillingStateMachine(meter=meter, lock_timeout=2, max_attempts=3, retry_delay=0)


@pytest.fixture()
def trash_manager(ledger):
    return TrashManager(ledger=ledger, retention_days=30)


@pytest.fixture()
def content_service(store, ledger, state_machine, meter):
    return ContentService(
        store=store,
        ledger=ledger,
        state_machine=state_machine,
        meter=meter,
        max_upload_bytes=1024 * 1024,
    )


@pytest.fixture()
def orders(provider, state_machine):
    return PaymentOrders(provider=provider, state_machine=state_machine)


def make_user(db, created_at: datetime | None = None, **kwargs) -> User:
    user = User(
        subject_id=kwargs.pop("subject_id", f"sub-{uuid.uuid4().hex}"),
        email=kwargs.pop("email", f"test-{uuid.uuid4().hex[:8]}@example.com"),
        display_name=kwargs.pop("display_name", "Test User"),
        storage_limit_bytes=kwargs.pop("storage_limit_bytes", 10 * GIB),
        created_at=created_at or datetime(2026, 1, 10, 9, 30, tzinfo=UTC),
        **kwargs,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_record(
    db,
    owner,
    content_address: str = "bafyshared",
    size: int = 1024,
    filename: str | None = None,
    folder: FolderRecord | None = None,
    **kwargs,
) -> ContentRecord:
    name = filename or f"file-{uuid.uuid4().hex[:6]}.bin"
    record = ContentRecord(
        owner_id=owner.id,
        content_address=content_address,
        filename=name,
        original_filename=name,
        size=size,
        parent_folder_id=folder.id if folder else None,
        **kwargs,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def make_folder(db, owner, name: str = "Docs", parent: FolderRecord | None = None) -> FolderRecord:
    folder = FolderRecord(owner_id=owner.id, name=name, parent_folder_id=parent.id if parent else None)
    db.add(folder)
    db.commit()
    db.refresh(folder)
    return folder


@pytest.fixture()
def user(db_session):
    return make_user(db_session)


@pytest.fixture()
def other_user(db_session):
    return make_user(db_session, created_at=datetime(2026, 1, 3, tzinfo=UTC))

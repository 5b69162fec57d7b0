"""
Pytest configuration for the billing service tests.
Environment must be set before any app import (settings are read at import time).
"""

import os
import tempfile

_test_data_dir = tempfile.mkdtemp(prefix="billing_test_")
os.environ["DATABASE_URL"] = f"sqlite:///{_test_data_dir}/test.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["CLOUDPAYMENTS_PUBLIC_ID"] = "pk_test_public"
os.environ["CLOUDPAYMENTS_API_SECRET"] = "test-api-secret"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["DEBUG"] = "false"

from datetime import datetime
from itertools import count

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.core.database import Base, SessionLocal, engine, get_db
import app.models  # noqa: F401
from app.models.user import User
from app.services import subscription_service
from app.services.plan_catalog import load_plan_catalog
from app.services.webhook_service import compute_signature

Base.metadata.create_all(engine)

NOW = datetime(2026, 1, 15, 12, 0, 0)
API_SECRET = os.environ["CLOUDPAYMENTS_API_SECRET"]
CRON_SECRET = os.environ["CRON_SECRET"]

_emails = count(1)


class FakeGateway:
    """CloudPaymentsClient の代替。呼び出しを記録し、固定の応答を返す"""

    def __init__(self):
        self.calls = []
        self.next_subscription_id = "sc_gateway_1"
        self.fail_on = set()

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.fail_on:
            from app.services.cloudpayments import CloudPaymentsError
            raise CloudPaymentsError(name, "simulated failure")

    def calls_to(self, name):
        return [kwargs for called, kwargs in self.calls if called == name]

    def void_payment(self, transaction_id):
        self._record("void_payment", transaction_id=transaction_id)

    def create_subscription(self, **kwargs):
        self._record("create_subscription", **kwargs)
        return {"Id": self.next_subscription_id, "Status": "Active"}

    def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id=subscription_id)


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    from app.core.rate_limit import limiter
    limiter.reset()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def catalog():
    return load_plan_catalog()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_user(db):
    def _make_user(is_tester=False, token_balance=0, current_plan=None, trial_used_at=None):
        user = User(
            email=f"user{next(_emails)}@example.com",
            is_tester=is_tester,
            token_balance=token_balance,
            current_plan=current_plan,
            trial_used_at=trial_used_at,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make_user


@pytest.fixture
def make_subscription(db, catalog):
    """有効な購読を直接作成 (Webhookを経由しない)"""
    def _make_subscription(user, plan_name="basic_monthly", external_id="sc_1", now=NOW, **kwargs):
        tier = catalog[plan_name]
        plan = subscription_service.get_or_create_plan(db, tier)
        return subscription_service.activate_subscription(
            db, user.id, plan, tier, now, external_subscription_id=external_id, **kwargs,
        )
    return _make_subscription


def sign(body: bytes) -> str:
    return compute_signature(body, API_SECRET)


@pytest.fixture
def auth_state():
    """ログイン中ユーザーID (None なら未ログイン)"""
    return {"user_id": None}


@pytest.fixture
def client(gateway, auth_state):
    from app.main import app
    from app.routers.deps import get_current_user, get_gateway

    def _current_user(db: Session = Depends(get_db)):
        if auth_state["user_id"] is None:
            return None
        return db.query(User).filter(User.id == auth_state["user_id"]).first()

    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_current_user] = _current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

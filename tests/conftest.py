import json
import os
from datetime import date
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
import stripe
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import (
    Base,
    CheckoutStatus,
    MonthPaymentStatus,
    MonthRecord,
    PaymentCheckout,
    PaymentIntent,
    PaymentSource,
    Student,
    StudentSubscription,
    SubscriptionPackage,
)
from schemas.gateway import GatewayOutcome, GatewayResult
from services.errors import GatewayError
from services.webhook_security import WebhookRateLimiter


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    session = factory()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def make_student(db):
    def _make(classfee=20, currency="ETB", name="Abebe Kebede", start_date=date(2025, 1, 1)):
        student = Student(
            name=name,
            classfee=Decimal(str(classfee)) if classfee is not None else None,
            classfee_currency=currency,
            start_date=start_date,
        )
        db.add(student)
        db.commit()
        return student
    return _make


@pytest.fixture
def make_checkout(db):
    def _make(student, tx_ref="tx-1", amount=45, intent=PaymentIntent.DEPOSIT,
              provider=PaymentSource.CHAPA, months=None, currency="ETB", metadata=None,
              status=CheckoutStatus.PENDING):
        checkout = PaymentCheckout(
            tx_ref=tx_ref,
            student_id=student.id,
            provider=provider,
            intent=intent,
            amount=Decimal(str(amount)),
            currency=currency,
            months=months or [],
            status=status,
            checkout_metadata=metadata or {},
        )
        db.add(checkout)
        db.commit()
        return checkout
    return _make


@pytest.fixture
def make_month(db):
    def _make(student, month, paid_amount=0, status=MonthPaymentStatus.PENDING, is_free_month=False, payment_id=None):
        record = MonthRecord(
            student_id=student.id,
            month=month,
            paid_amount=paid_amount,
            payment_status=status.value,
            is_free_month=is_free_month,
            payment_id=payment_id,
        )
        db.add(record)
        db.commit()
        return record
    return _make


@pytest.fixture
def make_package(db):
    def _make(name="Quarterly", duration=3, price=55, currency="USD"):
        package = SubscriptionPackage(
            name=name,
            duration=duration,
            price=Decimal(str(price)),
            currency=currency,
            is_active=True,
        )
        db.add(package)
        db.commit()
        return package
    return _make


@pytest.fixture
def make_subscription(db):
    def _make(student, package, stripe_subscription_id="sub_1", status="active"):
        record = StudentSubscription(
            student_id=student.id,
            package_id=package.id,
            stripe_subscription_id=stripe_subscription_id,
            status=status,
        )
        db.add(record)
        db.commit()
        return record
    return _make


@pytest.fixture
def months_of(db):
    def _months(student):
        return {
            record.month: record
            for record in db.query(MonthRecord).filter(MonthRecord.student_id == student.id).all()
        }
    return _months


@pytest.fixture
def gateway_result():
    def _result(outcome=GatewayOutcome.SUCCESS, provider=PaymentSource.CHAPA, reference="ref-1", currency="ETB"):
        return GatewayResult(
            outcome=outcome,
            provider=provider,
            provider_reference=reference,
            provider_status=outcome.value,
            provider_payload={"status": outcome.value},
            currency=currency if outcome == GatewayOutcome.SUCCESS else None,
        )
    return _result


# ---------------------------------------------------------------------------
# Fake gateways
# ---------------------------------------------------------------------------

class FakeChapa:
    def __init__(self):
        self.results = {}
        self.calls = []

    def verify(self, tx_ref):
        self.calls.append(tx_ref)
        return self.results[tx_ref]


class FakeStripe:
    WEBHOOK_SIGNATURE = "t=1,v1=valid"

    def __init__(self):
        self.subscriptions = {}
        self.invoice_amounts = {}
        self.session_results = {}
        self.sessions = {}
        self.subscription_calls = []

    def verify(self, checkout):
        return self.session_results.get(checkout.tx_ref)

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise GatewayError(f"No such checkout.session: {session_id}", {"session_id": session_id})
        return self.sessions[session_id]

    def retrieve_subscription(self, subscription_id):
        self.subscription_calls.append(subscription_id)
        return self.subscriptions[subscription_id]

    def latest_invoice_amount(self, subscription_id):
        return self.invoice_amounts.get(subscription_id)

    def construct_event(self, payload, signature):
        if signature != self.WEBHOOK_SIGNATURE:
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)

    def add_subscription(self, subscription_id, student_id, package_id, start, end, status="active", metadata=None):
        data = {"studentId": str(student_id), "packageId": str(package_id)}
        data.update(metadata or {})
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "status": status,
            "customer": "cus_1",
            "metadata": data,
            "current_period_start": int(start.timestamp()),
            "current_period_end": int(end.timestamp()),
        }


@pytest.fixture
def chapa():
    return FakeChapa()


@pytest.fixture
def stripe_gateway():
    return FakeStripe()


@pytest.fixture
def gateways(chapa, stripe_gateway):
    return {PaymentSource.CHAPA: chapa, PaymentSource.STRIPE: stripe_gateway}


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
def rate_limiter():
    limiter = WebhookRateLimiter("100/minute", "memory://")
    yield limiter
    limiter.reset()


@pytest.fixture
def client(db, gateways, rate_limiter):
    from fastapi.testclient import TestClient

    from database import get_session
    from main import app
    from routers.payments import get_gateways, get_rate_limiter

    def _session():
        yield db

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_gateways] = lambda: gateways
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

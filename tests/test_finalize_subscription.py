from datetime import datetime
from decimal import Decimal

import pytest

from models import MonthPaymentStatus, MonthRecord, Payment, PaymentStatus, StudentSubscription
from services.errors import InvariantViolationError
from services.finalize_subscription import (
    derive_idempotency_key,
    finalize_subscription_payment,
    sync_subscription_status,
)
from services.plan_change_service import record_plan_change_payment

PERIOD_START = datetime(2025, 1, 15, 12, 0, 0)
PERIOD_END = datetime(2025, 4, 15, 12, 0, 0)


@pytest.fixture
def student(make_student):
    return make_student(classfee=20)


@pytest.fixture
def package(make_package):
    return make_package(name="Quarterly", duration=3, price=55, currency="USD")


def test_idempotency_key_derivation():
    assert derive_idempotency_key("sub_1", session_id="cs_1") == "finalize_sub_1_cs_1"
    assert derive_idempotency_key("sub_1", invoice_id="in_1") == "finalize_sub_1_in_1"
    assert derive_idempotency_key("sub_1", session_id="cs_1", idempotency_key="webhook_x") == "webhook_x"
    assert derive_idempotency_key("sub_1").startswith("finalize_sub_1_")


def test_initial_payment_spreads_remainder_onto_last_month(db, student, package, stripe_gateway, months_of):
    stripe_gateway.add_subscription("sub_1", student.id, package.id, PERIOD_START, PERIOD_END)

    result = finalize_subscription_payment(
        db, "sub_1", is_initial_payment=True, session_id="cs_1",
        invoice_amount=Decimal("55"), gateway=stripe_gateway,
    )

    assert not result.already_processed
    assert result.status == "active"
    record = db.query(StudentSubscription).one()
    assert result.subscription_id == record.id
    assert record.student_id == student.id
    assert record.next_billing_date is not None

    payment = db.query(Payment).one()
    assert payment.transaction_id == "finalize_sub_1_cs_1"
    assert payment.status == PaymentStatus.APPROVED
    assert payment.paid_amount == Decimal("55")
    assert payment.currency == "USD"
    assert payment.subscription_id == record.id
    assert "Initial" in payment.reason

    months = months_of(student)
    assert [(m, months[m].paid_amount) for m in sorted(months)] == [
        ("2025-01", 18),
        ("2025-02", 18),
        ("2025-03", 19),
    ]
    for month in months.values():
        assert month.payment_status == MonthPaymentStatus.PAID.value
        assert month.payment_id == payment.id
        assert month.provider_reference == "cs_1"
        assert month.start_date is not None and month.end_date is not None


def test_replay_short_circuits(db, student, package, stripe_gateway):
    stripe_gateway.add_subscription("sub_1", student.id, package.id, PERIOD_START, PERIOD_END)
    kwargs = dict(is_initial_payment=True, session_id="cs_1", invoice_amount=Decimal("55"), gateway=stripe_gateway)

    first = finalize_subscription_payment(db, "sub_1", **kwargs)
    second = finalize_subscription_payment(db, "sub_1", **kwargs)

    assert second.already_processed
    assert second.subscription_id == first.subscription_id
    assert stripe_gateway.subscription_calls == ["sub_1"]
    assert db.query(Payment).count() == 1
    assert db.query(MonthRecord).count() == 3


def test_amount_falls_back_to_package_price(db, student, package, stripe_gateway):
    stripe_gateway.add_subscription("sub_1", student.id, package.id, PERIOD_START, PERIOD_END)

    finalize_subscription_payment(db, "sub_1", is_initial_payment=False, invoice_id="in_1", gateway=stripe_gateway)

    payment = db.query(Payment).one()
    assert payment.paid_amount == Decimal("55")
    assert "Renewal" in payment.reason


def test_amount_from_latest_invoice(db, student, package, stripe_gateway):
    stripe_gateway.add_subscription("sub_1", student.id, package.id, PERIOD_START, PERIOD_END)
    stripe_gateway.invoice_amounts["sub_1"] = Decimal("60.00")

    finalize_subscription_payment(db, "sub_1", is_initial_payment=True, session_id="cs_1", gateway=stripe_gateway)

    assert db.query(Payment).one().paid_amount == Decimal("60.00")
    assert sum(m.paid_amount for m in db.query(MonthRecord).all()) == 60


def test_subscription_cannot_move_to_another_student(
    db, student, package, make_student, make_subscription, stripe_gateway,
):
    owner = make_student(name="Owner")
    make_subscription(owner, package, "sub_1")
    stripe_gateway.add_subscription("sub_1", student.id, package.id, PERIOD_START, PERIOD_END)

    with pytest.raises(InvariantViolationError):
        finalize_subscription_payment(
            db, "sub_1", is_initial_payment=True, session_id="cs_1", gateway=stripe_gateway,
        )

    assert db.query(StudentSubscription).one().student_id == owner.id
    assert db.query(Payment).count() == 0
    assert db.query(MonthRecord).count() == 0


def test_missing_metadata_is_rejected(db, stripe_gateway):
    stripe_gateway.subscriptions["sub_1"] = {"id": "sub_1", "status": "active", "metadata": {}}

    with pytest.raises(InvariantViolationError):
        finalize_subscription_payment(db, "sub_1", is_initial_payment=True, session_id="cs_1", gateway=stripe_gateway)


def test_zero_duration_package_rolls_back(db, student, make_package, stripe_gateway):
    package = make_package(name="Broken", duration=0, price=10)
    stripe_gateway.add_subscription("sub_1", student.id, package.id, PERIOD_START, PERIOD_END)

    with pytest.raises(InvariantViolationError):
        finalize_subscription_payment(
            db, "sub_1", is_initial_payment=True, session_id="cs_1",
            invoice_amount=Decimal("10"), gateway=stripe_gateway,
        )

    assert db.query(StudentSubscription).count() == 0
    assert db.query(Payment).count() == 0
    assert db.query(MonthRecord).count() == 0


def test_downgrade_preserves_paid_months(
    db, student, package, make_package, make_subscription, make_month, stripe_gateway, months_of,
):
    subscription = make_subscription(student, package, "sub_1")
    for month in ("2025-01", "2025-02", "2025-03"):
        make_month(student, month, paid_amount=20, status=MonthPaymentStatus.PAID)
    basic = make_package(name="Basic", duration=3, price=30)

    credit = record_plan_change_payment(db, subscription, basic, "downgrade", Decimal("-10"))
    assert credit.paid_amount == Decimal("10")
    assert credit.reason.startswith("CREDIT: Subscription downgrade - Quarterly → Basic")

    stripe_gateway.add_subscription(
        "sub_1", student.id, basic.id, PERIOD_START, PERIOD_END,
        metadata={"downgradedAt": "2025-01-20T10:00:00Z"},
    )
    result = finalize_subscription_payment(
        db, "sub_1", is_initial_payment=False, invoice_id="in_down", gateway=stripe_gateway,
    )

    assert result.subscription_id == subscription.id
    assert db.query(Payment).count() == 1
    assert [m.paid_amount for m in months_of(student).values()] == [20, 20, 20]
    assert all(m.payment_id is None for m in months_of(student).values())


def test_upgrade_reuses_plan_change_payment(
    db, student, package, make_package, make_subscription, stripe_gateway, months_of,
):
    subscription = make_subscription(student, package, "sub_1")
    premium = make_package(name="Premium", duration=3, price=90)

    upgrade = record_plan_change_payment(db, subscription, premium, "upgrade", Decimal("30"))
    assert upgrade.transaction_id.startswith("upgrade_sub_1_")
    assert db.query(StudentSubscription).one().package_id == premium.id

    stripe_gateway.add_subscription(
        "sub_1", student.id, premium.id, PERIOD_START, PERIOD_END,
        metadata={"upgradedAt": "2025-01-20T10:00:00Z"},
    )
    finalize_subscription_payment(
        db, "sub_1", is_initial_payment=False, session_id="cs_up",
        invoice_amount=Decimal("30"), gateway=stripe_gateway,
    )

    assert db.query(Payment).count() == 1
    months = months_of(student)
    assert [months[m].paid_amount for m in sorted(months)] == [30, 30, 30]
    assert all(m.payment_id == upgrade.id for m in months.values())


def test_repeated_upgrade_refreshes_recent_payment(db, student, package, make_package, make_subscription):
    subscription = make_subscription(student, package, "sub_1")
    premium = make_package(name="Premium", duration=3, price=90)

    first = record_plan_change_payment(db, subscription, premium, "upgrade", Decimal("30"))
    second = record_plan_change_payment(db, subscription, premium, "upgrade", Decimal("32.50"))

    assert second.id == first.id
    assert db.query(Payment).count() == 1
    assert second.paid_amount == Decimal("32.50")


def test_unknown_plan_change(db, student, package, make_subscription):
    subscription = make_subscription(student, package, "sub_1")
    with pytest.raises(ValueError):
        record_plan_change_payment(db, subscription, package, "sidegrade", 10)


def test_status_sync(db, student, package, make_subscription):
    make_subscription(student, package, "sub_1")

    record = sync_subscription_status(db, "sub_1", "past_due")
    assert record.status == "past_due"

    ends = datetime(2025, 6, 1)
    record = sync_subscription_status(db, "sub_1", "active", cancel_at_period_end=True, next_billing_date=ends)
    assert record.status == "cancelled"
    assert record.next_billing_date == ends

    assert sync_subscription_status(db, "sub_unknown", "active") is None

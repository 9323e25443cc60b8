import json
from datetime import datetime
from decimal import Decimal

from models import (
    CheckoutStatus,
    MonthRecord,
    Payment,
    PaymentCheckout,
    PaymentIntent,
    PaymentSource,
    PaymentStatus,
    StudentSubscription,
)
from schemas.gateway import GatewayOutcome
from services.webhook_security import WebhookRateLimiter

STRIPE_URL = "/api/payments/webhooks/stripe"


def _stripe_post(client, stripe_gateway, event, **headers):
    request_headers = {"content-type": "application/json", "stripe-signature": stripe_gateway.WEBHOOK_SIGNATURE}
    request_headers.update(headers)
    return client.post(STRIPE_URL, content=json.dumps(event), headers=request_headers)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_verify_endpoint_finalizes(client, db, make_student, make_checkout, chapa, gateway_result):
    student = make_student(classfee=20)
    make_checkout(student, tx_ref="tx-1", amount=40)
    chapa.results["tx-1"] = gateway_result()

    response = client.post("/api/payments/tx-1/verify")

    assert response.status_code == 200
    body = response.json()
    assert body["verified"] is True
    assert body["finalized"] is True
    assert body["checkout"]["status"] == "completed"
    assert body["checkout"]["metadata"]["paymentCreated"] is True
    assert db.query(MonthRecord).count() == 2


def test_verify_unknown_checkout_is_404(client):
    assert client.post("/api/payments/missing/verify").status_code == 404


def test_chapa_webhook_success(client, db, make_student, make_checkout):
    student = make_student(classfee=20)
    make_checkout(student, tx_ref="tx-1", amount=20)

    response = client.post(
        "/api/payments/webhooks/chapa",
        json={"event": "charge.success", "data": {"tx_ref": "tx-1", "status": "success", "reference": "APx1", "charge": 0.7}},
    )

    assert response.status_code == 200
    assert response.json()["detail"] == "success"
    payment = db.query(Payment).one()
    assert payment.provider_reference == "APx1"
    assert payment.provider_fee == Decimal("0.70")


def test_chapa_webhook_pending_is_acknowledged(client, db, make_student, make_checkout):
    student = make_student(classfee=20)
    make_checkout(student, tx_ref="tx-1", amount=20)

    response = client.post("/api/payments/webhooks/chapa", json={"tx_ref": "tx-1", "status": "pending"})

    assert response.status_code == 200
    assert response.json()["detail"] == "pending"
    assert db.query(Payment).count() == 0


def test_chapa_webhook_without_tx_ref(client):
    assert client.post("/api/payments/webhooks/chapa", json={"status": "success"}).status_code == 400


def test_chapa_webhook_finalization_failure_is_not_acknowledged(client, db, make_student, make_checkout):
    student = make_student(classfee=0)
    make_checkout(student, tx_ref="tx-1", amount=20)

    response = client.post("/api/payments/webhooks/chapa", json={"tx_ref": "tx-1", "status": "success"})

    assert response.status_code == 422
    checkout = db.query(PaymentCheckout).one()
    assert checkout.status == CheckoutStatus.PENDING


def test_stripe_webhook_rejects_content_type(client, stripe_gateway):
    response = _stripe_post(client, stripe_gateway, {"type": "ping"}, **{"content-type": "application/xml"})
    assert response.status_code == 400


def test_stripe_webhook_rejects_bad_signature(client, stripe_gateway):
    response = _stripe_post(client, stripe_gateway, {"type": "ping"}, **{"stripe-signature": "t=1,v1=forged"})
    assert response.status_code == 400


def test_stripe_webhook_rejects_large_body(client, stripe_gateway):
    event = {"type": "ping", "padding": "x" * (1024 * 1024)}
    assert _stripe_post(client, stripe_gateway, event).status_code == 400


def test_stripe_webhook_rate_limit(client, stripe_gateway):
    from routers.payments import get_rate_limiter

    limiter = WebhookRateLimiter("1/minute", "memory://")
    client.app.dependency_overrides[get_rate_limiter] = lambda: limiter

    assert _stripe_post(client, stripe_gateway, {"type": "ping"}).status_code == 200
    response = _stripe_post(client, stripe_gateway, {"type": "ping"})

    assert response.status_code == 429
    assert int(response.headers["retry-after"]) >= 1


def test_stripe_checkout_completed_finalizes_checkout(client, db, stripe_gateway, make_student, make_checkout):
    student = make_student(classfee=50)
    make_checkout(
        student, tx_ref="tx-s", amount=100, provider=PaymentSource.STRIPE, currency="USD",
        intent=PaymentIntent.TUITION, months=["2025-01", "2025-02"],
    )
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1",
            "payment_status": "paid",
            "status": "complete",
            "currency": "usd",
            "payment_intent": "pi_1",
            "metadata": {"txRef": "tx-s"},
        }},
    }

    response = _stripe_post(client, stripe_gateway, event)

    assert response.status_code == 200
    assert response.json()["detail"] == GatewayOutcome.SUCCESS.value
    payment = db.query(Payment).one()
    assert payment.provider_reference == "pi_1"
    assert payment.currency == "USD"
    assert db.query(MonthRecord).filter(MonthRecord.payment_id == payment.id).count() == 2


def test_stripe_checkout_expired_fails_checkout(client, db, stripe_gateway, make_student, make_checkout):
    student = make_student(classfee=20)
    make_checkout(student, tx_ref="tx-s", amount=20, provider=PaymentSource.STRIPE, currency="USD")
    event = {"type": "checkout.session.expired", "data": {"object": {"id": "cs_1", "metadata": {"txRef": "tx-s"}}}}

    assert _stripe_post(client, stripe_gateway, event).status_code == 200
    assert db.query(PaymentCheckout).one().status == CheckoutStatus.FAILED
    assert db.query(Payment).one().status == PaymentStatus.REJECTED


def test_stripe_invoice_paid_finalizes_subscription(client, db, stripe_gateway, make_student, make_package):
    student = make_student(classfee=20)
    package = make_package(duration=3, price=55)
    stripe_gateway.add_subscription(
        "sub_1", student.id, package.id, datetime(2025, 1, 15, 12), datetime(2025, 4, 15, 12),
    )
    event = {
        "type": "invoice.payment_succeeded",
        "data": {"object": {
            "id": "in_1",
            "billing_reason": "subscription_create",
            "amount_paid": 5500,
            "currency": "usd",
            "parent": {"subscription_details": {"subscription": "sub_1"}},
        }},
    }

    first = _stripe_post(client, stripe_gateway, event)
    second = _stripe_post(client, stripe_gateway, event)

    assert first.status_code == 200
    assert second.json()["detail"] == "already processed"
    payment = db.query(Payment).one()
    assert payment.transaction_id == "webhook_invoice_in_1"
    assert payment.paid_amount == Decimal("55")
    assert "Initial" in payment.reason
    assert sorted(m.paid_amount for m in db.query(MonthRecord).all()) == [18, 18, 19]


def test_stripe_subscription_events_sync_status(
    client, db, stripe_gateway, make_student, make_package, make_subscription,
):
    student = make_student(classfee=20)
    make_subscription(student, make_package(), "sub_1")

    failed = {"type": "invoice.payment_failed", "data": {"object": {"id": "in_2", "subscription": "sub_1"}}}
    assert _stripe_post(client, stripe_gateway, failed).json()["detail"] == "past_due"
    assert db.query(StudentSubscription).one().status == "past_due"

    deleted = {
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_1", "status": "canceled", "canceled_at": 1767225600}},
    }
    assert _stripe_post(client, stripe_gateway, deleted).status_code == 200
    record = db.query(StudentSubscription).one()
    assert record.status == "cancelled"
    assert record.end_date is not None


def test_stripe_unhandled_event_is_ignored(client, stripe_gateway):
    response = _stripe_post(client, stripe_gateway, {"type": "customer.created", "data": {"object": {}}})
    assert response.status_code == 200
    assert response.json()["detail"] == "ignored"


def test_apply_deposit_endpoint(client, db, make_student, make_month):
    student = make_student(classfee=20)
    make_month(student, "2025-01")
    payment = Payment(
        student_id=student.id,
        student_name=student.name,
        payment_date=datetime(2025, 1, 5),
        transaction_id="manual-1",
        paid_amount=Decimal("30"),
        currency="ETB",
        status=PaymentStatus.APPROVED,
        source=PaymentSource.MANUAL,
        intent=PaymentIntent.DEPOSIT,
    )
    db.add(payment)
    db.commit()

    response = client.post(f"/api/payments/{payment.id}/apply-deposit")

    assert response.status_code == 200
    body = response.json()
    assert body["applied"] is True
    assert body["months_applied"] == 1
    assert Decimal(str(body["remaining_balance"])) == Decimal("10")
    assert body["allocations"][0]["month"] == "2025-01"

    again = client.post(f"/api/payments/{payment.id}/apply-deposit").json()
    assert again["applied"] is False


def test_apply_deposit_unknown_payment(client):
    assert client.post("/api/payments/999/apply-deposit").status_code == 404


def _subscription_session(session_id="cs_1", subscription_id="sub_1", payment_status="paid", mode="subscription"):
    return {
        "id": session_id,
        "mode": mode,
        "status": "complete",
        "payment_status": payment_status,
        "subscription": subscription_id,
        "amount_total": 5500,
        "currency": "usd",
    }


def _initial_invoice(invoice_id="in_1", subscription_id="sub_1", billing_reason="subscription_create"):
    return {
        "type": "invoice.payment_succeeded",
        "data": {"object": {
            "id": invoice_id,
            "billing_reason": billing_reason,
            "amount_paid": 5500,
            "currency": "usd",
            "subscription": subscription_id,
        }},
    }


def test_first_subscription_charge_is_recorded_once(client, db, stripe_gateway, make_student, make_package):
    student = make_student(classfee=20)
    package = make_package(duration=3, price=55)
    stripe_gateway.add_subscription("sub_1", student.id, package.id, datetime(2025, 1, 15, 12), datetime(2025, 4, 15, 12))
    completed = {"type": "checkout.session.completed", "data": {"object": _subscription_session()}}

    assert _stripe_post(client, stripe_gateway, completed).status_code == 200
    response = _stripe_post(client, stripe_gateway, _initial_invoice())

    assert response.status_code == 200
    assert response.json()["detail"] == "already processed"
    payment = db.query(Payment).one()
    assert payment.transaction_id == "webhook_session_cs_1"
    assert db.query(MonthRecord).filter(MonthRecord.payment_id == payment.id).count() == 3


def test_subscription_update_invoice_is_a_renewal(client, db, stripe_gateway, make_student, make_package):
    student = make_student(classfee=20)
    package = make_package(duration=3, price=55)
    stripe_gateway.add_subscription("sub_1", student.id, package.id, datetime(2025, 1, 15, 12), datetime(2025, 4, 15, 12))

    _stripe_post(client, stripe_gateway, _initial_invoice())
    _stripe_post(client, stripe_gateway, _initial_invoice("in_2", billing_reason="subscription_update"))

    reasons = sorted(p.reason for p in db.query(Payment).all())
    assert len(reasons) == 2
    assert "Initial" in reasons[0]
    assert "Renewal" in reasons[1]


def test_verify_session_finalizes_subscription(client, db, stripe_gateway, make_student, make_package):
    student = make_student(classfee=20)
    package = make_package(duration=3, price=55)
    stripe_gateway.add_subscription("sub_1", student.id, package.id, datetime(2025, 1, 15, 12), datetime(2025, 4, 15, 12))
    stripe_gateway.sessions["cs_1"] = _subscription_session()

    response = client.post("/api/payments/stripe/sessions/cs_1/verify")

    assert response.status_code == 200
    body = response.json()
    assert body["verified"] is True
    assert body["finalized"] is True
    assert body["already_processed"] is False
    assert body["status"] == "active"
    payment = db.query(Payment).one()
    assert payment.transaction_id == "verify_session_cs_1"
    assert payment.paid_amount == Decimal("55")
    assert body["subscription_id"] == db.query(StudentSubscription).one().id


def test_verify_session_and_webhook_share_one_payment(client, db, stripe_gateway, make_student, make_package):
    student = make_student(classfee=20)
    package = make_package(duration=3, price=55)
    stripe_gateway.add_subscription("sub_1", student.id, package.id, datetime(2025, 1, 15, 12), datetime(2025, 4, 15, 12))
    stripe_gateway.sessions["cs_1"] = _subscription_session()
    completed = {"type": "checkout.session.completed", "data": {"object": _subscription_session()}}

    assert _stripe_post(client, stripe_gateway, completed).status_code == 200
    body = client.post("/api/payments/stripe/sessions/cs_1/verify").json()

    assert body["already_processed"] is True
    assert db.query(Payment).count() == 1


def test_verify_session_unpaid_changes_nothing(client, db, stripe_gateway):
    stripe_gateway.sessions["cs_1"] = _subscription_session(payment_status="unpaid")
    stripe_gateway.sessions["cs_2"] = _subscription_session("cs_2", mode="payment")

    unpaid = client.post("/api/payments/stripe/sessions/cs_1/verify").json()
    one_time = client.post("/api/payments/stripe/sessions/cs_2/verify").json()

    assert unpaid["verified"] is False
    assert unpaid["message"] == "Payment not completed"
    assert one_time["finalized"] is False
    assert one_time["message"] == "Not a subscription checkout"
    assert db.query(Payment).count() == 0
    assert stripe_gateway.subscription_calls == []


def test_verify_session_unknown_session(client):
    assert client.post("/api/payments/stripe/sessions/cs_missing/verify").status_code == 502

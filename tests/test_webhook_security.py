from services.webhook_security import (
    WebhookRateLimiter,
    client_identifier,
    validate_content_type,
    validate_request_size,
)


def test_rate_limiter_blocks_after_limit():
    limiter = WebhookRateLimiter("2/minute", "memory://")

    assert limiter.check("ip:10.0.0.1").allowed
    assert limiter.check("ip:10.0.0.1").allowed
    blocked = limiter.check("ip:10.0.0.1")
    assert not blocked.allowed
    assert 1 <= blocked.retry_after <= 60

    assert limiter.check("ip:10.0.0.2").allowed


def test_rate_limiter_reset():
    limiter = WebhookRateLimiter("1/minute", "memory://")
    assert limiter.check("stripe:evt_1").allowed
    assert not limiter.check("stripe:evt_1").allowed

    limiter.reset()

    assert limiter.check("stripe:evt_1").allowed


def test_client_identifier_prefers_stripe_event_id():
    headers = {"Stripe-Event-Id": "evt_123", "X-Forwarded-For": "1.1.1.1"}
    assert client_identifier(headers, "9.9.9.9") == "stripe:evt_123"


def test_client_identifier_falls_back_to_ip():
    assert client_identifier({"X-Forwarded-For": "1.1.1.1, 2.2.2.2"}) == "ip:1.1.1.1"
    assert client_identifier({"X-Real-IP": "3.3.3.3"}, "9.9.9.9") == "ip:3.3.3.3"
    assert client_identifier({}, "9.9.9.9") == "ip:9.9.9.9"
    assert client_identifier({}) == "ip:unknown"


def test_request_size():
    assert validate_request_size(b"x" * 10, max_size=10).valid
    too_big = validate_request_size(b"x" * 11, max_size=10)
    assert not too_big.valid
    assert "11 bytes" in too_big.error
    assert not validate_request_size("é" * 6, max_size=10).valid


def test_content_type():
    assert validate_content_type("application/json").valid
    assert validate_content_type("application/json; charset=utf-8").valid
    assert validate_content_type("text/plain").valid
    assert not validate_content_type("application/xml").valid
    assert not validate_content_type(None).valid

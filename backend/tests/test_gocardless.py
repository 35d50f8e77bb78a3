from __future__ import annotations

import hashlib
import hmac
import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from clubbilling.enums import MandateStatus, ProviderPaymentStatus
from clubbilling.integrations.gocardless import (
    GoCardlessClient,
    ProviderRequestError,
    ProviderTransientError,
    parse_webhook_events,
    verify_webhook_signature,
)


def _client(handler) -> GoCardlessClient:
    return GoCardlessClient(
        access_token="sandbox_token",
        environment="sandbox",
        max_attempts=3,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )


def _error(status: int, message: str, reason: str, **links) -> httpx.Response:
    return httpx.Response(
        status,
        json={
            "error": {
                "type": "invalid_state" if status == 409 else "validation_failed",
                "message": message,
                "errors": [{"reason": reason, "message": message, "links": links}],
            }
        },
    )


def test_submit_collection_sends_minor_units_and_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            json={"payments": {"id": "PM123", "status": "pending_submission", "charge_date": "2025-03-05"}},
        )

    ack = _client(handler).submit_collection(
        "MD1", Decimal("20.50"), "GBP", "Senior Feb 2025", idempotency_key="sub-1-2025-02-28"
    )
    assert ack.provider_payment_id == "PM123"
    assert ack.status == ProviderPaymentStatus.pending
    assert ack.charge_date == date(2025, 3, 5)

    [request] = seen
    assert request.method == "POST"
    assert request.url.path == "/payments"
    assert request.headers["Idempotency-Key"] == "sub-1-2025-02-28"
    assert request.headers["Authorization"] == "Bearer sandbox_token"
    assert request.headers["GoCardless-Version"] == "2015-07-06"
    body = json.loads(request.content)
    assert body == {
        "payments": {
            "amount": 2050,
            "currency": "GBP",
            "description": "Senior Feb 2025",
            "links": {"mandate": "MD1"},
        }
    }


def test_idempotent_conflict_returns_existing_payment():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return _error(
                409,
                "A resource has already been created with this idempotency key",
                "idempotent_creation_conflict",
                conflicting_resource_id="PM999",
            )
        assert request.url.path == "/payments/PM999"
        return httpx.Response(200, json={"payments": {"id": "PM999", "status": "submitted"}})

    ack = _client(handler).submit_collection("MD1", Decimal("5"), "GBP", "x", idempotency_key="k")
    assert ack.provider_payment_id == "PM999"
    assert ack.status == ProviderPaymentStatus.submitted


def test_server_errors_are_retried():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"mandates": {"id": "MD1", "status": "active"}})

    assert _client(handler).get_mandate_status("MD1") == MandateStatus.active
    assert calls["n"] == 3


def test_persistent_outage_is_transient():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(500)

    with pytest.raises(ProviderTransientError):
        _client(handler).get_payment_status("PM1")
    assert calls["n"] == 3


def test_connection_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderTransientError):
        _client(handler).get_payment_status("PM1")


def test_validation_error_is_final():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return _error(422, "Mandate is not active", "mandate_is_inactive")

    with pytest.raises(ProviderRequestError) as excinfo:
        _client(handler).submit_collection("MD1", Decimal("1"), "GBP", "x", idempotency_key="k")
    assert calls["n"] == 1
    assert excinfo.value.status_code == 422
    assert excinfo.value.reason == "mandate_is_inactive"
    assert str(excinfo.value) == "Mandate is not active"
    assert excinfo.value.is_payer_rejection


def test_authentication_error_is_not_a_payer_rejection():
    def handler(request: httpx.Request) -> httpx.Response:
        return _error(401, "Invalid access token", "access_token_not_found")

    with pytest.raises(ProviderRequestError) as excinfo:
        _client(handler).submit_collection("MD1", Decimal("1"), "GBP", "x", idempotency_key="k")
    assert excinfo.value.status_code == 401
    assert not excinfo.value.is_payer_rejection


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("pending_customer_approval", MandateStatus.pending),
        ("submitted", MandateStatus.pending),
        ("active", MandateStatus.active),
        ("suspended_by_payer", MandateStatus.cancelled),
        ("blocked", MandateStatus.failed),
        ("expired", MandateStatus.expired),
    ],
)
def test_mandate_status_mapping(raw, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"mandates": {"id": "MD1", "status": raw}})

    assert _client(handler).get_mandate_status("MD1") == expected


def test_unknown_status_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"payments": {"id": "PM1", "status": "teleported"}})

    with pytest.raises(ProviderRequestError):
        _client(handler).get_payment_status("PM1")


def test_missing_subscription_is_none():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("SB404"):
            return _error(404, "Resource not found", "resource_not_found")
        return httpx.Response(200, json={"subscriptions": {"id": "SB1", "status": "active"}})

    client = _client(handler)
    assert client.get_subscription_status("SB404") is None
    assert client.get_subscription_status("SB1") == "active"


def test_webhook_signature():
    body = b'{"events": []}'
    secret = "whsec"
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    assert verify_webhook_signature(body, signature, secret)
    assert not verify_webhook_signature(body, signature, "other")
    assert not verify_webhook_signature(body + b" ", signature, secret)
    assert not verify_webhook_signature(body, None, secret)
    assert not verify_webhook_signature(b"", signature, secret)


def test_parse_webhook_events():
    body = json.dumps(
        {
            "events": [
                {
                    "id": "EV1",
                    "resource_type": "payments",
                    "action": "failed",
                    "links": {"payment": "PM1"},
                    "details": {"cause": "insufficient_funds", "description": "Not enough money"},
                },
                {
                    "id": "EV2",
                    "resource_type": "mandates",
                    "action": "cancelled",
                    "links": {"mandate": "MD1"},
                },
            ]
        }
    ).encode()
    first, second = parse_webhook_events(body)
    assert (first.id, first.resource_type, first.action, first.resource_id) == (
        "EV1",
        "payments",
        "failed",
        "PM1",
    )
    assert first.details["cause"] == "insufficient_funds"
    assert second.resource_id == "MD1"
    assert second.details == {}


@pytest.mark.parametrize(
    "body",
    [b"not json", b"[]", b'{"events": "nope"}', b'{"events": [{"action": "failed"}]}'],
)
def test_parse_rejects_malformed_bodies(body):
    with pytest.raises(ValueError):
        parse_webhook_events(body)

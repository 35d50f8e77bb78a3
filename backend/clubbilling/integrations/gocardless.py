"""
GoCardless Direct Debit client

Thin httpx wrapper over the GoCardless Pro REST API covering what the
billing core needs:

- POST /payments                      submit a collection against a mandate
- GET  /mandates/{id}                 mandate status (synchronizer)
- GET  /payments/{id}                 payment status (poll fallback)
- GET  /subscriptions/{id}            provider-side subscription status
- webhook signature check and event parsing

Errors are split in two: ``ProviderTransientError`` (timeout, connection
error, 429, 5xx) is retried here with exponential backoff and is never a
payment failure; ``ProviderRequestError`` (any other 4xx) is final.

API docs: https://developer.gocardless.com/api-reference
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clubbilling.core.config import settings
from clubbilling.enums import MandateStatus, ProviderPaymentStatus
from clubbilling.services.money import to_minor_units

logger = logging.getLogger(__name__)

API_VERSION = "2015-07-06"
BASE_URLS = {
    "live": "https://api.gocardless.com",
    "sandbox": "https://api-sandbox.gocardless.com",
}

MANDATE_STATUS_MAP: dict[str, MandateStatus] = {
    "pending_customer_approval": MandateStatus.pending,
    "pending_submission": MandateStatus.pending,
    "submitted": MandateStatus.pending,
    "active": MandateStatus.active,
    "suspended_by_payer": MandateStatus.cancelled,
    "cancelled": MandateStatus.cancelled,
    "consumed": MandateStatus.cancelled,
    "failed": MandateStatus.failed,
    "blocked": MandateStatus.failed,
    "expired": MandateStatus.expired,
}

PAYMENT_STATUS_MAP: dict[str, ProviderPaymentStatus] = {
    "pending_customer_approval": ProviderPaymentStatus.pending,
    "pending_submission": ProviderPaymentStatus.pending,
    "submitted": ProviderPaymentStatus.submitted,
    "confirmed": ProviderPaymentStatus.confirmed,
    "paid_out": ProviderPaymentStatus.paid_out,
    "cancelled": ProviderPaymentStatus.cancelled,
    "customer_approval_denied": ProviderPaymentStatus.failed,
    "failed": ProviderPaymentStatus.failed,
    "charged_back": ProviderPaymentStatus.charged_back,
}

# Webhook actions that move a resource to a new status. Actions not listed
# (e.g. "created", "resubmission_requested") carry no status change.
PAYMENT_ACTION_MAP: dict[str, ProviderPaymentStatus] = {
    "submitted": ProviderPaymentStatus.submitted,
    "confirmed": ProviderPaymentStatus.confirmed,
    "paid_out": ProviderPaymentStatus.paid_out,
    "failed": ProviderPaymentStatus.failed,
    "late_failure_settled": ProviderPaymentStatus.failed,
    "customer_approval_denied": ProviderPaymentStatus.failed,
    "charged_back": ProviderPaymentStatus.charged_back,
    "chargeback_settled": ProviderPaymentStatus.charged_back,
    "cancelled": ProviderPaymentStatus.cancelled,
}

MANDATE_ACTION_MAP: dict[str, MandateStatus] = {
    "created": MandateStatus.pending,
    "customer_approval_granted": MandateStatus.pending,
    "submitted": MandateStatus.pending,
    "active": MandateStatus.active,
    "reinstated": MandateStatus.active,
    "cancelled": MandateStatus.cancelled,
    "failed": MandateStatus.failed,
    "blocked": MandateStatus.failed,
    "expired": MandateStatus.expired,
}


# Submission errors attributable to the payer rather than to the integration.
PAYER_REJECTION_REASONS = frozenset(
    {
        "mandate_is_inactive",
        "mandate_cancelled",
        "mandate_expired",
        "mandate_failed",
        "bank_account_disabled",
        "bank_account_closed",
    }
)


class ProviderError(Exception):
    pass


class ProviderTransientError(ProviderError):
    """Connectivity or provider-side outage; safe to retry later."""


class ProviderRequestError(ProviderError):
    """
    The provider rejected the request; retrying the same request will not help.

    Only rejections caused by the payer's mandate or bank account count
    against the payer (``is_payer_rejection``). Authentication, permission
    and payload errors are ours to fix.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        error_type: str | None = None,
        reason: str | None = None,
        links: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.reason = reason
        self.links = links or {}

    @property
    def is_payer_rejection(self) -> bool:
        return self.reason in PAYER_REJECTION_REASONS


@dataclass(frozen=True)
class SubmittedCollection:
    provider_payment_id: str
    status: ProviderPaymentStatus
    charge_date: date | None = None


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    resource_type: str
    action: str
    resource_id: str | None
    details: dict[str, Any] = field(default_factory=dict)
    links: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """What the billing core needs from a Direct Debit provider."""

    def submit_collection(
        self,
        mandate_ref: str,
        amount: Decimal,
        currency: str,
        description: str,
        *,
        idempotency_key: str,
        charge_date: date | None = None,
    ) -> SubmittedCollection: ...

    def get_mandate_status(self, mandate_ref: str) -> MandateStatus: ...

    def get_payment_status(self, payment_ref: str) -> ProviderPaymentStatus: ...

    def get_subscription_status(self, subscription_ref: str) -> str | None: ...


class GoCardlessClient:
    def __init__(
        self,
        *,
        access_token: str | None = None,
        environment: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        token = access_token if access_token is not None else settings.GOCARDLESS_ACCESS_TOKEN
        if not token:
            logger.warning("GOCARDLESS_ACCESS_TOKEN is not set; provider calls will be rejected")
        env = environment or settings.GOCARDLESS_ENVIRONMENT
        self.base_url = BASE_URLS[env]
        self.max_attempts = max_attempts or settings.PROVIDER_MAX_ATTEMPTS
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.PROVIDER_BACKOFF_SECONDS
        )
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token or ''}",
                "GoCardless-Version": API_VERSION,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def submit_collection(
        self,
        mandate_ref: str,
        amount: Decimal,
        currency: str,
        description: str,
        *,
        idempotency_key: str,
        charge_date: date | None = None,
    ) -> SubmittedCollection:
        """
        Create a payment against a mandate.

        The acknowledgment only means the provider accepted the request; the
        outcome arrives later by webhook or poll. The idempotency key makes a
        resubmission after a timeout return the original payment instead of
        creating a second one.
        """
        payment: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "description": description[:255],
            "links": {"mandate": mandate_ref},
        }
        if charge_date is not None:
            payment["charge_date"] = charge_date.isoformat()

        try:
            data = self._request(
                "POST",
                "/payments",
                body={"payments": payment},
                headers={"Idempotency-Key": idempotency_key},
            )
        except ProviderRequestError as exc:
            conflicting = self._conflicting_resource_id(exc)
            if exc.status_code != 409 or not conflicting:
                raise
            # Already created by an earlier attempt with the same key.
            logger.info("Payment for key %s already exists as %s", idempotency_key, conflicting)
            data = self._request("GET", f"/payments/{conflicting}")

        body = data.get("payments") or {}
        raw_charge_date = body.get("charge_date")
        return SubmittedCollection(
            provider_payment_id=str(body["id"]),
            status=PAYMENT_STATUS_MAP.get(str(body.get("status")), ProviderPaymentStatus.submitted),
            charge_date=date.fromisoformat(raw_charge_date) if raw_charge_date else None,
        )

    def get_mandate_status(self, mandate_ref: str) -> MandateStatus:
        data = self._request("GET", f"/mandates/{mandate_ref}")
        raw_status = str((data.get("mandates") or {}).get("status"))
        status = MANDATE_STATUS_MAP.get(raw_status)
        if status is None:
            raise ProviderRequestError(
                f"Unknown mandate status {raw_status!r}", status_code=200, error_type="unknown_status"
            )
        return status

    def get_payment_status(self, payment_ref: str) -> ProviderPaymentStatus:
        data = self._request("GET", f"/payments/{payment_ref}")
        raw_status = str((data.get("payments") or {}).get("status"))
        status = PAYMENT_STATUS_MAP.get(raw_status)
        if status is None:
            raise ProviderRequestError(
                f"Unknown payment status {raw_status!r}", status_code=200, error_type="unknown_status"
            )
        return status

    def get_subscription_status(self, subscription_ref: str) -> str | None:
        """Raw provider status, or ``None`` when the provider has no such subscription."""
        try:
            data = self._request("GET", f"/subscriptions/{subscription_ref}")
        except ProviderRequestError as exc:
            if exc.status_code == 404:
                return None
            raise
        return (data.get("subscriptions") or {}).get("status")

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            retry=retry_if_exception_type(ProviderTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._send, method, path, body, headers)

    def _send(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(f"GoCardless {method} {path} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"GoCardless {method} {path} failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                f"GoCardless {method} {path} returned {response.status_code}"
            )
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            error = error if isinstance(error, dict) else {}
            first = (error.get("errors") or [{}])[0] if isinstance(error.get("errors"), list) else {}
            raise ProviderRequestError(
                str(error.get("message") or f"GoCardless returned {response.status_code}"),
                status_code=response.status_code,
                error_type=error.get("type"),
                reason=first.get("reason") if isinstance(first, dict) else None,
                links=first.get("links") if isinstance(first, dict) else None,
            )
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _conflicting_resource_id(exc: ProviderRequestError) -> str | None:
        if exc.reason != "idempotent_creation_conflict":
            return None
        return exc.links.get("conflicting_resource_id")


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """HMAC-SHA256 of the raw request body, hex encoded, compared in constant time."""
    if not body or not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.strip(), expected)


def parse_webhook_events(body: bytes) -> list[WebhookEvent]:
    """
    Parse a webhook body into events.

    GoCardless batches events in ``{"events": [...]}``. ``resource_type`` is
    plural ("payments") while the link key is singular ("payment").

    Raises:
        ValueError: when the body is not a JSON object with an events list
    """
    payload = json.loads(body)
    if not isinstance(payload, dict) or not isinstance(payload.get("events"), list):
        raise ValueError("Webhook body has no events list")

    events: list[WebhookEvent] = []
    for raw in payload["events"]:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ValueError("Webhook event without id")
        resource_type = str(raw.get("resource_type") or "")
        links = raw.get("links") if isinstance(raw.get("links"), dict) else {}
        singular = resource_type[:-1] if resource_type.endswith("s") else resource_type
        resource_id = links.get(singular) or links.get(resource_type)
        events.append(
            WebhookEvent(
                id=str(raw["id"]),
                resource_type=resource_type,
                action=str(raw.get("action") or ""),
                resource_id=str(resource_id) if resource_id else None,
                details=raw.get("details") if isinstance(raw.get("details"), dict) else {},
                links=links,
                raw=raw,
            )
        )
    return events


_provider: PaymentProvider | None = None


def set_payment_provider(provider: PaymentProvider | None) -> None:
    global _provider
    _provider = provider


def get_payment_provider() -> PaymentProvider:
    """Process-wide provider client, created from settings on first use."""
    global _provider
    if _provider is None:
        _provider = GoCardlessClient()
    return _provider

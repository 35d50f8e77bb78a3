"""
Provider webhooks

GoCardless posts batches of events signed with HMAC-SHA256 over the raw
body (``Webhook-Signature``). Each event is logged in ``payment_webhooks``
under its provider id, which makes redelivery a no-op, and is then fed into
the same code paths the polling sync uses:

- ``payments`` events -> payment ingestor (and from there dunning)
- ``mandates`` events -> ``MandateSynchronizer.apply_mandate_status``

Events are committed one by one. If any event fails the response is a 500
so the provider redelivers the batch; already processed events are skipped
on the second pass.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from clubbilling import crud
from clubbilling.api.deps import SessionDep, ServicesDep
from clubbilling.api.errors import AppError, ValidationFailed, WebhookSignatureInvalid
from clubbilling.api.schemas import ApiEnvelope, WebhookResultData
from clubbilling.core.config import settings
from clubbilling.integrations.gocardless import (
    MANDATE_ACTION_MAP,
    PAYMENT_ACTION_MAP,
    WebhookEvent,
    parse_webhook_events,
    verify_webhook_signature,
)
from clubbilling.models import PaymentWebhook, utc_now
from clubbilling.services.container import BillingServices
from clubbilling.services.payment_events import PaymentStatusChange
from clubbilling.services.state_machine import WEBHOOK

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/gocardless", response_model=ApiEnvelope)
def gocardless_webhook(
    session: SessionDep,
    services: ServicesDep,
    body: bytes = Depends(raw_body),
    webhook_signature: str | None = Header(default=None),
) -> ApiEnvelope:
    secret = settings.GOCARDLESS_WEBHOOK_SECRET
    if not secret or not verify_webhook_signature(body, webhook_signature, secret):
        raise WebhookSignatureInvalid("Invalid webhook signature")
    try:
        events = parse_webhook_events(body)
    except ValueError as exc:
        raise ValidationFailed(f"Malformed webhook body: {exc}")

    result = WebhookResultData(received=len(events), processed=0, duplicates=0)
    for event in events:
        existing = session.exec(
            select(PaymentWebhook).where(PaymentWebhook.provider_event_id == event.id)
        ).first()
        if existing is not None and existing.processed:
            result.duplicates += 1
            continue
        row = existing or PaymentWebhook(
            provider_event_id=event.id,
            resource_type=event.resource_type,
            action=event.action,
            resource_id=event.resource_id,
            payload=event.raw,
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError:
            # A concurrent delivery of the same event got there first.
            session.rollback()
            result.duplicates += 1
            continue

        try:
            handled = _handle_event(services, event)
            row.processed = True
            row.processing_error = None if handled else "ignored"
            row.processed_at = utc_now()
            session.add(row)
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.exception("Webhook event %s failed", event.id)
            _record_failure(session, event, exc)
            result.failed += 1
            continue
        result.processed += 1

    if result.failed:
        raise AppError(
            f"{result.failed} of {result.received} webhook events failed",
            code=500001,
            status_code=500,
            reason="WebhookProcessingFailed",
        )
    return ApiEnvelope(data=result)


def _handle_event(services: BillingServices, event: WebhookEvent) -> bool:
    """Apply one event. Returns False for events this service does not act on."""
    if event.resource_type == "payments":
        status = PAYMENT_ACTION_MAP.get(event.action)
        if status is None or not event.resource_id:
            return False
        payment = services.payments.apply(
            PaymentStatusChange(
                status=status,
                source="webhook",
                provider_payment_id=event.resource_id,
                reason=event.details.get("description") or event.details.get("cause"),
                payout_id=event.links.get("payout"),
            )
        )
        return payment is not None

    if event.resource_type == "mandates":
        status = MANDATE_ACTION_MAP.get(event.action)
        if status is None or not event.resource_id:
            return False
        mandate = crud.mandates.get_by_provider_id(
            session=services.session, provider_mandate_id=event.resource_id
        )
        if mandate is None:
            logger.info("Ignoring %s for unknown mandate %s", event.action, event.resource_id)
            return False
        mandate.provider_status = status
        mandate.provider_checked_at = utc_now()
        services.session.add(mandate)
        services.mandates.apply_mandate_status(mandate, status, actor=WEBHOOK)
        return True

    return False


def _record_failure(session: SessionDep, event: WebhookEvent, exc: Exception) -> None:
    row = session.exec(
        select(PaymentWebhook).where(PaymentWebhook.provider_event_id == event.id)
    ).first() or PaymentWebhook(
        provider_event_id=event.id,
        resource_type=event.resource_type,
        action=event.action,
        resource_id=event.resource_id,
        payload=event.raw,
    )
    row.processed = False
    row.processing_error = f"{type(exc).__name__}: {exc}"
    session.add(row)
    session.commit()

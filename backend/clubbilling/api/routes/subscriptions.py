"""
Subscription routes

Thin front door over the state machine: each handler scopes the
subscription to the caller's club, runs one transition, commits, and only
then submits any adjustment charge to the provider.
"""
from __future__ import annotations

from fastapi import APIRouter

from clubbilling.api.deps import CallerDep, OperatorDep, ServicesDep
from clubbilling.api.schemas import (
    ApiEnvelope,
    CancelRequest,
    ChangeTierData,
    ChangeTierRequest,
    PauseRequest,
    SubscriptionCreateRequest,
    SubscriptionEventPublic,
    SubscriptionPublic,
)
from clubbilling.models import Subscription

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _public(subscription: Subscription) -> SubscriptionPublic:
    return SubscriptionPublic.model_validate(subscription)


@router.post("", response_model=ApiEnvelope)
def create_subscription(
    body: SubscriptionCreateRequest, caller: CallerDep, services: ServicesDep
) -> ApiEnvelope:
    subscription = services.machine.create(
        club_id=caller.club_id,
        payer_user_id=body.payer_user_id,
        beneficiary_user_id=body.beneficiary_user_id or body.payer_user_id,
        tier_id=body.tier_id,
        actor=caller.actor,
        billing_frequency=body.billing_frequency,
        billing_day_of_month=body.billing_day_of_month,
        mandate_id=body.mandate_id,
        provider_subscription_id=body.provider_subscription_id,
    )
    services.session.commit()
    services.session.refresh(subscription)
    return ApiEnvelope(data=_public(subscription))


@router.get("/{subscription_id}", response_model=ApiEnvelope)
def get_subscription(
    subscription_id: int, caller: CallerDep, services: ServicesDep
) -> ApiEnvelope:
    subscription = services.machine.get(subscription_id, club_id=caller.club_id)
    return ApiEnvelope(data=_public(subscription))


@router.get("/{subscription_id}/events", response_model=ApiEnvelope)
def list_events(subscription_id: int, caller: CallerDep, services: ServicesDep) -> ApiEnvelope:
    services.machine.get(subscription_id, club_id=caller.club_id)
    events = services.machine.list_events(subscription_id)
    return ApiEnvelope(data=[SubscriptionEventPublic.model_validate(e) for e in events])


@router.post("/{subscription_id}/activate", response_model=ApiEnvelope)
def activate(subscription_id: int, caller: CallerDep, services: ServicesDep) -> ApiEnvelope:
    services.machine.get(subscription_id, club_id=caller.club_id)
    subscription = services.machine.activate(subscription_id, actor=caller.actor)
    services.session.commit()
    services.session.refresh(subscription)
    return ApiEnvelope(data=_public(subscription))


@router.post("/{subscription_id}/change-tier", response_model=ApiEnvelope)
def change_tier(
    subscription_id: int, body: ChangeTierRequest, caller: CallerDep, services: ServicesDep
) -> ApiEnvelope:
    services.machine.get(subscription_id, club_id=caller.club_id)
    result = services.machine.change_tier(
        subscription_id, body.tier_id, actor=caller.actor, prorate=body.prorate
    )
    services.session.commit()
    if result.adjustment_payment is not None:
        services.billing.submit_pending([result.adjustment_payment])
    services.session.refresh(result.subscription)
    proration = result.proration
    payment = result.adjustment_payment
    return ApiEnvelope(
        data=ChangeTierData(
            subscription=_public(result.subscription),
            adjustment=proration.adjustment if proration else None,
            days_remaining=proration.days_remaining if proration else None,
            total_days=proration.total_days if proration else None,
            credit_added=result.credit_added,
            adjustment_payment_id=payment.id if payment else None,
        )
    )


@router.post("/{subscription_id}/pause", response_model=ApiEnvelope)
def pause(
    subscription_id: int, body: PauseRequest, caller: CallerDep, services: ServicesDep
) -> ApiEnvelope:
    services.machine.get(subscription_id, club_id=caller.club_id)
    subscription = services.machine.pause(
        subscription_id, actor=caller.actor, resume_date=body.resume_date
    )
    services.session.commit()
    services.session.refresh(subscription)
    return ApiEnvelope(data=_public(subscription))


@router.post("/{subscription_id}/resume", response_model=ApiEnvelope)
def resume(subscription_id: int, caller: CallerDep, services: ServicesDep) -> ApiEnvelope:
    services.machine.get(subscription_id, club_id=caller.club_id)
    subscription = services.machine.resume(subscription_id, actor=caller.actor)
    services.session.commit()
    services.session.refresh(subscription)
    return ApiEnvelope(data=_public(subscription))


@router.post("/{subscription_id}/cancel", response_model=ApiEnvelope)
def cancel(
    subscription_id: int, body: CancelRequest, caller: CallerDep, services: ServicesDep
) -> ApiEnvelope:
    services.machine.get(subscription_id, club_id=caller.club_id)
    subscription = services.machine.cancel(
        subscription_id, actor=caller.actor, reason=body.reason, immediate=body.immediate
    )
    services.session.commit()
    services.session.refresh(subscription)
    return ApiEnvelope(data=_public(subscription))


@router.post("/{subscription_id}/reactivate", response_model=ApiEnvelope)
def reactivate(subscription_id: int, caller: OperatorDep, services: ServicesDep) -> ApiEnvelope:
    """Operator override for a suspended subscription."""
    services.machine.get(subscription_id, club_id=caller.club_id)
    subscription = services.machine.reactivate(subscription_id, actor=caller.actor)
    services.session.commit()
    services.session.refresh(subscription)
    return ApiEnvelope(data=_public(subscription))

from __future__ import annotations

from fastapi import APIRouter

from clubbilling.api.deps import OperatorDep, ServicesDep
from clubbilling.api.schemas import ApiEnvelope, SubscriptionPublic

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])


@router.get("/subscriptions", response_model=ApiEnvelope)
def subscription_report(caller: OperatorDep, services: ServicesDep) -> ApiEnvelope:
    """Read-only: which subscriptions drifted from the provider or cannot bill."""
    report = services.diagnostics.report(club_id=caller.club_id)
    return ApiEnvelope(data=report)


@router.post("/subscriptions/{subscription_id}/sync", response_model=ApiEnvelope)
def sync_subscription(
    subscription_id: int, caller: OperatorDep, services: ServicesDep
) -> ApiEnvelope:
    subscription = services.mandates.sync_subscription(
        subscription_id, actor=caller.actor, club_id=caller.club_id
    )
    services.session.commit()
    services.session.refresh(subscription)
    entry = services.diagnostics.diagnose(subscription)
    return ApiEnvelope(
        data={
            "subscription": SubscriptionPublic.model_validate(subscription),
            "diagnostic": entry,
        }
    )

"""
Billing configuration routes

- dunning policy: deployment-wide, replaced by appending a new record so
  the change is picked up by the next dunning invocation
- club settings: service charge and seasonal invoice defaults
"""
from __future__ import annotations

from fastapi import APIRouter
from pydantic import ValidationError

from clubbilling import crud
from clubbilling.api.deps import OperatorDep, SessionDep
from clubbilling.api.errors import ValidationFailed
from clubbilling.api.schemas import (
    ApiEnvelope,
    ClubBillingSettingsPublic,
    ClubBillingSettingsRequest,
    DunningPolicyData,
)
from clubbilling.services.config_service import (
    DunningPolicy,
    load_dunning_policy,
    save_dunning_policy,
)

router = APIRouter(prefix="/billing-config", tags=["billing-config"])


@router.get("/dunning", response_model=ApiEnvelope)
def get_dunning_policy(_: OperatorDep, session: SessionDep) -> ApiEnvelope:
    policy = load_dunning_policy(session)
    return ApiEnvelope(data=DunningPolicyData(**policy.model_dump()))


@router.put("/dunning", response_model=ApiEnvelope)
def put_dunning_policy(
    body: DunningPolicyData, caller: OperatorDep, session: SessionDep
) -> ApiEnvelope:
    try:
        policy = DunningPolicy(retry_limit=body.retry_limit, backoff_days=body.backoff_days)
    except ValidationError as exc:
        raise ValidationFailed(f"Invalid dunning policy: {exc.errors()[0]['msg']}")
    save_dunning_policy(session, policy, updated_by=f"user:{caller.actor_id}")
    session.commit()
    return ApiEnvelope(data=DunningPolicyData(**policy.model_dump()))


@router.put("/club", response_model=ApiEnvelope)
def put_club_settings(
    body: ClubBillingSettingsRequest, caller: OperatorDep, session: SessionDep
) -> ApiEnvelope:
    row = crud.billing_settings.upsert(
        session=session,
        club_id=caller.club_id,
        service_charge_enabled=body.service_charge_enabled,
        service_charge_type=body.service_charge_type,
        service_charge_value=body.service_charge_value,
        auto_invoice_enabled=body.auto_invoice_enabled,
        default_invoice_items=[
            {"description": item.description, "amount": str(item.amount)}
            for item in body.default_invoice_items
        ],
        invoice_due_days=body.invoice_due_days,
    )
    return ApiEnvelope(data=ClubBillingSettingsPublic.model_validate(row))

from __future__ import annotations

from fastapi import APIRouter

from clubbilling import crud
from clubbilling.api.deps import CallerDep, ServicesDep, SessionDep
from clubbilling.api.schemas import ApiEnvelope, MandateCreateRequest, MandatePublic

router = APIRouter(prefix="/mandates", tags=["mandates"])


@router.post("", response_model=ApiEnvelope)
def register_mandate(
    body: MandateCreateRequest, caller: CallerDep, services: ServicesDep
) -> ApiEnvelope:
    """
    Record a mandate the payer set up at the provider. It starts pending;
    the mandate sync or a ``mandates`` webhook makes it active.
    """
    mandate = services.mandates.register_mandate(
        club_id=caller.club_id,
        payer_user_id=body.payer_user_id,
        provider_mandate_id=body.provider_mandate_id,
        provider_customer_id=body.provider_customer_id,
        scheme=body.scheme,
        make_default=body.make_default,
        actor=caller.actor,
    )
    return ApiEnvelope(data=MandatePublic.model_validate(mandate))


@router.get("", response_model=ApiEnvelope)
def list_mandates(payer_user_id: int, caller: CallerDep, session: SessionDep) -> ApiEnvelope:
    mandates = crud.mandates.list_for_payer(
        session=session, club_id=caller.club_id, payer_user_id=payer_user_id
    )
    return ApiEnvelope(data=[MandatePublic.model_validate(m) for m in mandates])


@router.post("/{mandate_id}/default", response_model=ApiEnvelope)
def make_default(mandate_id: int, caller: CallerDep, services: ServicesDep) -> ApiEnvelope:
    mandate = services.mandates.set_default_mandate(
        mandate_id, club_id=caller.club_id, actor=caller.actor
    )
    return ApiEnvelope(data=MandatePublic.model_validate(mandate))

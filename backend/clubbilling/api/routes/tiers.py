from __future__ import annotations

from fastapi import APIRouter

from clubbilling import crud
from clubbilling.api.deps import CallerDep, OperatorDep, SessionDep
from clubbilling.api.schemas import ApiEnvelope, TierCreateRequest, TierPublic, TierUpdateRequest

router = APIRouter(prefix="/tiers", tags=["tiers"])


@router.post("", response_model=ApiEnvelope)
def create_tier(body: TierCreateRequest, caller: OperatorDep, session: SessionDep) -> ApiEnvelope:
    tier = crud.tiers.create(
        session=session,
        club_id=caller.club_id,
        name=body.name,
        monthly_price=body.monthly_price,
        annual_price=body.annual_price,
        currency=body.currency,
    )
    return ApiEnvelope(data=TierPublic.model_validate(tier))


@router.get("", response_model=ApiEnvelope)
def list_tiers(caller: CallerDep, session: SessionDep) -> ApiEnvelope:
    tiers = crud.tiers.list_for_club(session=session, club_id=caller.club_id)
    return ApiEnvelope(data=[TierPublic.model_validate(t) for t in tiers])


@router.patch("/{tier_id}", response_model=ApiEnvelope)
def update_tier(
    tier_id: int, body: TierUpdateRequest, caller: OperatorDep, session: SessionDep
) -> ApiEnvelope:
    """Existing subscriptions keep the amount they snapshotted."""
    tier = crud.tiers.update(
        session=session,
        club_id=caller.club_id,
        tier_id=tier_id,
        name=body.name,
        monthly_price=body.monthly_price,
        annual_price=body.annual_price,
        is_active=body.is_active,
    )
    return ApiEnvelope(data=TierPublic.model_validate(tier))

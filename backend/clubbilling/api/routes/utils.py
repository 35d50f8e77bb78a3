from fastapi import APIRouter
from sqlmodel import select

from clubbilling.api.deps import SessionDep

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
def health_check(session: SessionDep) -> bool:
    """
    Liveness probe for load balancers and the container orchestrator.

    Touches the database so a lost connection shows up as a 500.
    """
    session.exec(select(1))
    return True

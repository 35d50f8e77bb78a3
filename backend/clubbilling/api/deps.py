"""
FastAPI dependencies

Authentication happens in front of this service: the gateway forwards an
already-authorized caller as headers (``X-Club-Id``, ``X-Actor-Id``,
``X-Actor-Role``). Routes only scope data to the caller's club and check the
operator role where needed.
"""
from collections.abc import Generator
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.engine import Engine
from sqlmodel import Session

from clubbilling.api.errors import Forbidden
from clubbilling.core import db
from clubbilling.enums import ActorType
from clubbilling.integrations.gocardless import PaymentProvider, get_payment_provider
from clubbilling.services.container import BillingServices, build_services
from clubbilling.services.state_machine import Actor

OPERATOR_ROLES = frozenset({"admin", "operator"})


def get_db() -> Generator[Session, None, None]:
    with Session(db.engine) as session:
        yield session


def get_engine() -> Engine:
    return db.engine


def get_provider() -> PaymentProvider:
    return get_payment_provider()


SessionDep = Annotated[Session, Depends(get_db)]
EngineDep = Annotated[Engine, Depends(get_engine)]
ProviderDep = Annotated[PaymentProvider, Depends(get_provider)]


@dataclass(frozen=True)
class CallerContext:
    club_id: int
    actor_id: int | None
    role: str

    @property
    def actor(self) -> Actor:
        return Actor(ActorType.user, self.actor_id)

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


def get_caller(
    x_club_id: Annotated[int, Header()],
    x_actor_id: Annotated[int | None, Header()] = None,
    x_actor_role: Annotated[str, Header()] = "member",
) -> CallerContext:
    return CallerContext(club_id=x_club_id, actor_id=x_actor_id, role=x_actor_role.lower())


CallerDep = Annotated[CallerContext, Depends(get_caller)]


def require_operator(caller: CallerDep) -> CallerContext:
    if not caller.is_operator:
        raise Forbidden("Operator role required")
    return caller


OperatorDep = Annotated[CallerContext, Depends(require_operator)]


def get_services(session: SessionDep, provider: ProviderDep) -> BillingServices:
    return build_services(session, provider=provider)


ServicesDep = Annotated[BillingServices, Depends(get_services)]

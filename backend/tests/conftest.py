from __future__ import annotations

from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from clubbilling.api.deps import get_db, get_engine, get_provider
from clubbilling.core import db as core_db
from clubbilling.enums import ActorType, MandateStatus, ProviderPaymentStatus
from clubbilling.integrations.gocardless import ProviderRequestError, SubmittedCollection
from clubbilling.main import app
from clubbilling.models import MembershipTier, PaymentMandate
from clubbilling.services import notifications
from clubbilling.services.config_service import refresh_config
from clubbilling.services.container import build_services
from clubbilling.services.state_machine import Actor

MEMBER_ACTOR = Actor(ActorType.user, 100)


class FakeProvider:
    """In-memory GoCardless stand-in; replays the same ack for a reused idempotency key."""

    def __init__(self) -> None:
        self.submissions: list[dict] = []
        self.mandate_statuses: dict[str, MandateStatus] = {}
        self.payment_statuses: dict[str, ProviderPaymentStatus] = {}
        self.subscription_statuses: dict[str, str | None] = {}
        self.ack_status = ProviderPaymentStatus.submitted
        self.submit_error: Exception | None = None
        self._acks: dict[str, SubmittedCollection] = {}

    def submit_collection(
        self, mandate_ref, amount, currency, description, *, idempotency_key, charge_date=None
    ) -> SubmittedCollection:
        if self.submit_error is not None:
            raise self.submit_error
        if idempotency_key in self._acks:
            return self._acks[idempotency_key]
        ack = SubmittedCollection(
            provider_payment_id=f"PM{len(self._acks) + 1:04d}", status=self.ack_status
        )
        self._acks[idempotency_key] = ack
        self.submissions.append(
            {
                "mandate": mandate_ref,
                "amount": amount,
                "currency": currency,
                "description": description,
                "idempotency_key": idempotency_key,
            }
        )
        return ack

    def get_mandate_status(self, mandate_ref: str) -> MandateStatus:
        if mandate_ref not in self.mandate_statuses:
            raise ProviderRequestError("Mandate not found", status_code=404)
        return self.mandate_statuses[mandate_ref]

    def get_payment_status(self, payment_ref: str) -> ProviderPaymentStatus:
        return self.payment_statuses.get(payment_ref, ProviderPaymentStatus.submitted)

    def get_subscription_status(self, subscription_ref: str) -> str | None:
        return self.subscription_statuses.get(subscription_ref)


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[notifications.LifecycleEvent] = []

    def publish(self, event: notifications.LifecycleEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


class Clock:
    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today


class Factory:
    def __init__(self, session: Session, provider: FakeProvider, clock: Clock) -> None:
        self.session = session
        self.provider = provider
        self.clock = clock

    def services(self):
        return build_services(self.session, provider=self.provider, today=self.clock)

    def tier(
        self,
        *,
        club_id: int = 1,
        name: str = "Senior",
        monthly: str = "20.00",
        annual: str | None = None,
    ) -> MembershipTier:
        tier = MembershipTier(
            club_id=club_id,
            name=name,
            monthly_price=Decimal(monthly),
            annual_price=Decimal(annual) if annual is not None else None,
        )
        self.session.add(tier)
        self.session.commit()
        self.session.refresh(tier)
        return tier

    def mandate(
        self,
        *,
        club_id: int = 1,
        payer_user_id: int = 100,
        status: MandateStatus = MandateStatus.active,
        is_default: bool = True,
        ref: str | None = None,
    ) -> PaymentMandate:
        ref = ref or f"MD{club_id}{payer_user_id}{len(self.provider.mandate_statuses) + 1:03d}"
        mandate = PaymentMandate(
            club_id=club_id,
            payer_user_id=payer_user_id,
            provider_mandate_id=ref,
            status=status,
            is_default=is_default,
        )
        self.provider.mandate_statuses[ref] = status
        self.session.add(mandate)
        self.session.commit()
        self.session.refresh(mandate)
        return mandate

    def subscription(
        self,
        tier: MembershipTier,
        *,
        payer_user_id: int = 100,
        beneficiary_user_id: int = 200,
        **kwargs,
    ):
        services = self.services()
        subscription = services.machine.create(
            club_id=tier.club_id,
            payer_user_id=payer_user_id,
            beneficiary_user_id=beneficiary_user_id,
            tier_id=tier.id,
            actor=MEMBER_ACTOR,
            **kwargs,
        )
        self.session.commit()
        self.session.refresh(subscription)
        return subscription


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(autouse=True)
def _isolate(engine, monkeypatch) -> Generator[None, None, None]:
    # Worker bodies and get_db open sessions on core.db.engine.
    monkeypatch.setattr(core_db, "engine", engine)
    refresh_config()
    yield
    with Session(engine) as session:
        for table in reversed(SQLModel.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()


@pytest.fixture
def sink() -> Generator[RecordingSink, None, None]:
    recorder = RecordingSink()
    notifications.set_sink(recorder)
    yield recorder
    notifications.set_sink(None)


@pytest.fixture(autouse=True)
def _default_sink(request) -> Generator[None, None, None]:
    # Keep tests off Redis unless they ask for the recorder.
    if "sink" in request.fixturenames:
        yield
        return
    notifications.set_sink(RecordingSink())
    yield
    notifications.set_sink(None)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def clock() -> Clock:
    return Clock(date(2025, 1, 31))


@pytest.fixture
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def factory(db, provider, clock) -> Factory:
    return Factory(db, provider, clock)


@pytest.fixture
def client(engine, provider) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_provider] = lambda: provider
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()

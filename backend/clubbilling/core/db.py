"""
Database engine

The schema is owned by Alembic (``clubbilling/alembic/versions``); nothing
here creates tables. Import ``clubbilling.models`` before touching the
engine so every table is registered on ``SQLModel.metadata``.
"""
from sqlmodel import Session, create_engine, select

from clubbilling.core.config import settings
from clubbilling.models import DunningPolicyRecord
from clubbilling.services.config_service import default_dunning_policy, save_dunning_policy

engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def init_db(session: Session) -> None:
    """
    Seed the first dunning policy record from the bundled defaults.

    Later edits go through ``PUT /billing-config/dunning``; an existing record
    is never overwritten here.
    """
    existing = session.exec(select(DunningPolicyRecord).limit(1)).first()
    if existing:
        return
    save_dunning_policy(session, default_dunning_policy(), updated_by="initial_data")
    session.commit()

"""
Seed data, run after ``alembic upgrade head``.

Writes the first dunning policy record from ``config/default_config.json``.
"""
import logging

from sqlmodel import Session

from clubbilling.core.db import engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init() -> None:
    with Session(engine) as session:
        init_db(session)


def main() -> None:
    logger.info("Creating initial data")
    init()
    logger.info("Initial data created")


if __name__ == "__main__":  # pragma: no cover
    main()

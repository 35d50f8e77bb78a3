"""
Runtime billing configuration

Two layers:
- the bundled ``config/default_config.json``, cached in-process and
  reloaded with ``refresh_config()``
- the persisted ``DunningPolicyRecord`` (newest row wins), read on every
  dunning invocation so operator edits apply without a restart
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlmodel import Session, col, select

from clubbilling.core.config import settings
from clubbilling.models import DunningPolicyRecord

logger = logging.getLogger(__name__)

_lock = Lock()
_config: dict[str, Any] | None = None


class DunningPolicy(BaseModel):
    """
    Retry policy for failed collections.

    - retry_limit: failure count at which the subscription is suspended
    - backoff_days: days to wait before retry n (1-based); the last value
      repeats when there are more failures than entries
    """
    retry_limit: int = Field(ge=1)
    backoff_days: list[int] = Field(min_length=1)

    @field_validator("backoff_days")
    @classmethod
    def _positive_days(cls, value: list[int]) -> list[int]:
        if any(day < 1 for day in value):
            raise ValueError("backoff_days must be positive")
        return value

    def backoff_for(self, failure_count: int) -> int:
        index = min(max(failure_count, 1), len(self.backoff_days)) - 1
        return self.backoff_days[index]


def get_config() -> dict[str, Any]:
    global _config
    with _lock:
        if _config is not None:
            return _config
        _config = _load_from_file()
        return _config


def refresh_config() -> dict[str, Any]:
    global _config
    with _lock:
        _config = _load_from_file()
        return _config


def _load_from_file() -> dict[str, Any]:
    path = Path(__file__).resolve().parents[1] / "config" / "default_config.json"
    if not path.exists():
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


def default_dunning_policy() -> DunningPolicy:
    """Policy from the bundled config file, else from settings."""
    raw = get_config().get("dunning")
    if isinstance(raw, dict):
        try:
            return DunningPolicy.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring invalid dunning block in default_config.json", exc_info=True)
    return DunningPolicy(
        retry_limit=settings.DUNNING_RETRY_LIMIT,
        backoff_days=list(settings.DUNNING_BACKOFF_DAYS),
    )


def load_dunning_policy(session: Session) -> DunningPolicy:
    record = session.exec(
        select(DunningPolicyRecord)
        .order_by(col(DunningPolicyRecord.created_at).desc(), col(DunningPolicyRecord.id).desc())
        .limit(1)
    ).first()
    if record is None:
        return default_dunning_policy()
    try:
        return DunningPolicy(retry_limit=record.retry_limit, backoff_days=record.backoff_days)
    except ValidationError:
        # Records are validated on write; this only guards hand-edited rows.
        logger.error("Dunning policy record %s is invalid, using defaults", record.id)
        return default_dunning_policy()


def save_dunning_policy(
    session: Session, policy: DunningPolicy, *, updated_by: str | None = None
) -> DunningPolicyRecord:
    record = DunningPolicyRecord(
        retry_limit=policy.retry_limit,
        backoff_days=list(policy.backoff_days),
        updated_by=updated_by,
    )
    session.add(record)
    session.flush()
    return record

"""
Lifecycle notifications

Services never send anything themselves: they queue a ``LifecycleEvent`` on
the current session with ``enqueue``. After the session commits, queued
events are handed to the configured sink (a Redis stream by default); a
rollback drops them, so nothing is announced for work that did not persist.

Delivery is fire-and-forget. A sink failure is logged and swallowed and can
never fail the billing transaction, which has already committed by the time
the sink runs. Redis timeouts are short and a failing stream is skipped for
a cooldown period, so an outage does not stall a sweep.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

import redis
from pydantic import BaseModel, Field
from sqlalchemy import event
from sqlalchemy.orm import Session as OrmSession

from clubbilling.core.config import settings
from clubbilling.core.redis import get_redis
from clubbilling.enums import NotificationType
from clubbilling.models import utc_now

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_lifecycle_events"


class LifecycleEvent(BaseModel):
    """Minimal structured payload; templating happens downstream."""
    event_type: NotificationType
    club_id: int
    subscription_id: int | None = None
    payer_user_id: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)


class NotificationSink(Protocol):
    def publish(self, event: LifecycleEvent) -> None: ...


class SinkUnavailable(RuntimeError):
    pass


class RedisStreamSink:
    """
    Appends events to a Redis stream.

    After a Redis error the sink stays closed for
    ``NOTIFICATION_COOLDOWN_SECONDS`` and refuses events without touching
    the network, so an outage costs one short timeout per cooldown rather
    than one per event.
    """

    def __init__(
        self,
        stream: str | None = None,
        *,
        cooldown_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stream = stream or settings.NOTIFICATION_STREAM
        self.cooldown_seconds = (
            cooldown_seconds
            if cooldown_seconds is not None
            else settings.NOTIFICATION_COOLDOWN_SECONDS
        )
        self.clock = clock
        self._closed_until = 0.0

    def publish(self, event: LifecycleEvent) -> None:
        if self.clock() < self._closed_until:
            raise SinkUnavailable(f"Redis stream {self.stream} is cooling down")
        try:
            get_redis().xadd(
                self.stream,
                {"type": event.event_type.value, "event": event.model_dump_json()},
            )
        except redis.RedisError:
            self._closed_until = self.clock() + self.cooldown_seconds
            raise


_sink: NotificationSink | None = None


def set_sink(sink: NotificationSink | None) -> None:
    global _sink
    _sink = sink


def get_sink() -> NotificationSink:
    global _sink
    if _sink is None:
        _sink = RedisStreamSink()
    return _sink


def enqueue(session: OrmSession, event_: LifecycleEvent) -> None:
    session.info.setdefault(_PENDING_KEY, []).append(event_)


def dispatch(event_: LifecycleEvent) -> bool:
    try:
        get_sink().publish(event_)
    except SinkUnavailable as exc:
        logger.warning(
            "Dropping %s notification for subscription %s: %s",
            event_.event_type.value,
            event_.subscription_id,
            exc,
        )
        return False
    except Exception:
        logger.warning(
            "Dropping %s notification for subscription %s",
            event_.event_type.value,
            event_.subscription_id,
            exc_info=True,
        )
        return False
    return True


@event.listens_for(OrmSession, "after_commit")
def _publish_after_commit(session: OrmSession) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    for event_ in pending or ():
        dispatch(event_)


@event.listens_for(OrmSession, "after_rollback")
def _discard_after_rollback(session: OrmSession) -> None:
    session.info.pop(_PENDING_KEY, None)

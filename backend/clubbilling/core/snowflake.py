"""
Snowflake identifiers

Every table uses 64-bit ids generated in-process so rows (payments in
particular) can be referenced before they are flushed.

Layout, most significant first:
- 41 bits: milliseconds since 2024-01-01T00:00:00Z
- 10 bits: node id (``SNOWFLAKE_NODE_ID``, unique per running process)
- 12 bits: per-millisecond sequence

Ids are therefore roughly time ordered, which the event log relies on for
stable ordering when two rows share a timestamp.
"""
from __future__ import annotations

import threading
import time

from clubbilling.core.config import settings

_EPOCH_MS = 1704067200000
_MAX_BACKWARDS_MS = 5000


class Snowflake:
    """Thread-safe generator for one node."""

    def __init__(self, *, node_id: int) -> None:
        if not (0 <= node_id <= 1023):
            raise ValueError("SNOWFLAKE_NODE_ID must be in [0, 1023]")
        self._node_id = node_id
        self._lock = threading.Lock()
        self._last_ts = -1
        self._seq = 0

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    def next_id(self) -> int:
        """
        Return the next id.

        Raises:
            RuntimeError: if the wall clock moved back by more than five seconds
        """
        with self._lock:
            ts = self._now_ms()
            if ts < self._last_ts:
                drift = self._last_ts - ts
                if drift > _MAX_BACKWARDS_MS:
                    raise RuntimeError(
                        f"Clock moved backwards by {drift}ms. "
                        "Refusing to generate IDs to prevent duplicates."
                    )
                ts = self._wait_until(self._last_ts)

            if ts == self._last_ts:
                self._seq = (self._seq + 1) & 0xFFF
                if self._seq == 0:
                    # Sequence exhausted for this millisecond.
                    ts = self._wait_until(self._last_ts + 1)
            else:
                self._seq = 0

            self._last_ts = ts
            return ((ts - _EPOCH_MS) << 22) | (self._node_id << 12) | self._seq

    @classmethod
    def _wait_until(cls, target_ms: int) -> int:
        ts = cls._now_ms()
        while ts < target_ms:
            time.sleep(0.001)
            ts = cls._now_ms()
        return ts


_GENERATOR: Snowflake | None = None


def generate_id() -> int:
    global _GENERATOR
    if _GENERATOR is None:
        _GENERATOR = Snowflake(node_id=settings.SNOWFLAKE_NODE_ID)
    return _GENERATOR.next_id()

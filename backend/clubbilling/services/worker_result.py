"""Per-run counters reported by every background job body."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

MAX_RECORDED_ERRORS = 50


@dataclass
class WorkerResult:
    """
    Outcome of one worker run.

    A failing item is counted and recorded, never raised: one bad
    subscription must not stop the rest of the sweep.
    """
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def ok(self) -> None:
        self.processed += 1
        self.successful += 1

    def skip(self) -> None:
        self.processed += 1

    def fail(self, item: object, error: object) -> None:
        self.processed += 1
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            message = f"{type(error).__name__}: {error}" if isinstance(error, Exception) else str(error)
            self.errors.append(f"{item}: {message}")

    def bump(self, key: str, amount: int = 1) -> None:
        self.metadata[key] = self.metadata.get(key, 0) + amount

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from taskengine.models import TaskProgress


def compute_percentage(processed_items: int, total_items: int) -> int:
    """Round ``processed / total * 100`` half up; 0 when there is nothing to do."""

    if total_items <= 0:
        return 0
    processed = min(max(processed_items, 0), total_items)
    return (processed * 200 + total_items) // (total_items * 2)


def build_progress(
    processed_items: int, total_items: int, failed_items: int
) -> TaskProgress:
    return TaskProgress(
        processed_items=processed_items,
        total_items=total_items,
        failed_items=failed_items,
        percentage=compute_percentage(processed_items, total_items),
    )


def format_duration(started_at: datetime | None, completed_at: datetime | None) -> str | None:
    if started_at is None or completed_at is None:
        return None

    seconds = max(int((completed_at - started_at).total_seconds()), 0)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)

    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


@dataclass(slots=True)
class ItemOutcome:
    index: int
    success: bool
    label: str | None = None
    reason: str | None = None
    output: dict[str, object] | None = None


@dataclass(slots=True)
class ProgressDelta:
    outcomes: list[ItemOutcome]
    resume_cursor: int

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)


@dataclass(slots=True)
class Checkpointer:
    """Buffers item outcomes between progress writes.

    A checkpoint is due once ``every_items`` outcomes are pending or
    ``interval_ms`` has elapsed since the last flush with at least one pending
    outcome. The worker reads control flags from the snapshot each flush
    returns, so pause and cancel are observed within the same bound.
    """

    every_items: int = 1
    interval_ms: int = 1000
    clock: Callable[[], float] = time.monotonic
    _pending: list[ItemOutcome] = field(default_factory=list, init=False)
    _last_flush: float = field(default=0.0, init=False)

    def __post_init__(self) -> None:
        self.every_items = max(1, int(self.every_items))
        self.interval_ms = max(0, int(self.interval_ms))
        self._last_flush = self.clock()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def record(self, outcome: ItemOutcome) -> None:
        self._pending.append(outcome)

    def due(self) -> bool:
        if not self._pending:
            return False
        if len(self._pending) >= self.every_items:
            return True
        elapsed_ms = (self.clock() - self._last_flush) * 1000.0
        return elapsed_ms >= self.interval_ms

    def take(self) -> ProgressDelta | None:
        self._last_flush = self.clock()
        if not self._pending:
            return None

        outcomes = self._pending
        self._pending = []
        return ProgressDelta(
            outcomes=outcomes,
            resume_cursor=max(outcome.index for outcome in outcomes) + 1,
        )

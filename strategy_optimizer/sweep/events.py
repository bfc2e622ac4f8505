"""Notifications a sweep sends to whoever started it.

``SweepListener`` is the callback surface the runner talks to from its worker
thread. ``EventChannel`` is a listener that turns those callbacks into queued
messages so a caller can consume them on its own thread.
"""

from __future__ import annotations

import queue
import time
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Union

from .results import SweepResult


class SweepListener:
    """No-op base; override the notifications you care about."""

    def on_iteration_limit_exceeded(self, combination_count: int, max_iterations: int) -> None:
        pass

    def on_progress(self, processed: int, total: int) -> None:
        pass

    def on_finished(self, ranked_results: Sequence[SweepResult]) -> None:
        pass


@dataclass(frozen=True)
class ProgressEvent:
    processed: int
    total: int
    elapsed_s: float

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return int(100 * self.processed / self.total)

    @property
    def eta_s(self) -> Optional[float]:
        if self.processed <= 0:
            return None
        remaining = self.total - self.processed
        return self.elapsed_s / self.processed * remaining

    def describe(self) -> str:
        return f"{self.processed} of {self.total} ({self.percent}%)"


@dataclass(frozen=True)
class IterationLimitExceeded:
    combination_count: int
    max_iterations: int

    @property
    def message(self) -> str:
        return (
            f"The range of parameters for this optimization run requires {self.combination_count} iterations. "
            f"The maximum number of iterations is {self.max_iterations}. "
            "Reduce the number of parameters, reduce the range of parameters, or increase the step."
        )


@dataclass(frozen=True)
class SweepFinished:
    ranked_results: tuple[SweepResult, ...]


SweepEvent = Union[ProgressEvent, IterationLimitExceeded, SweepFinished]
TERMINAL_EVENTS = (IterationLimitExceeded, SweepFinished)


class EventChannel(SweepListener):
    """Queue-backed listener; the runner produces, the caller consumes."""

    def __init__(self) -> None:
        self._queue: queue.Queue[SweepEvent] = queue.Queue()
        self._started = time.perf_counter()

    def on_iteration_limit_exceeded(self, combination_count: int, max_iterations: int) -> None:
        self._queue.put(IterationLimitExceeded(combination_count=combination_count, max_iterations=max_iterations))

    def on_progress(self, processed: int, total: int) -> None:
        elapsed = time.perf_counter() - self._started
        self._queue.put(ProgressEvent(processed=processed, total=total, elapsed_s=elapsed))

    def on_finished(self, ranked_results: Sequence[SweepResult]) -> None:
        self._queue.put(SweepFinished(ranked_results=tuple(ranked_results)))

    def get(self, timeout: Optional[float] = None) -> SweepEvent:
        return self._queue.get(timeout=timeout)

    def events(self, timeout: Optional[float] = None) -> Iterator[SweepEvent]:
        """Yield events until the terminal one; ``queue.Empty`` if ``timeout`` elapses."""
        while True:
            event = self._queue.get(timeout=timeout)
            yield event
            if isinstance(event, TERMINAL_EVENTS):
                return

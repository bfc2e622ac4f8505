from __future__ import annotations

import threading
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

from .events import SweepListener
from .results import BacktestMetrics, SortCriterion, SweepResult, passes_min_trades, rank_results
from .space import Assignment, ParameterSpace, enumerate_assignments

DEFAULT_MIN_TRADES = 50
MIN_TRADES_FLOOR = 2
DEFAULT_MAX_ITERATIONS = 50_000_000
DEFAULT_LOG_EVERY = 100

BacktestInvoker = Callable[[Assignment], Union[BacktestMetrics, Mapping[str, Any]]]


class SweepState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SweepState.COMPLETED, SweepState.CANCELLED, SweepState.REJECTED, SweepState.FAILED)


@dataclass(frozen=True)
class SweepConfiguration:
    space: ParameterSpace
    min_trades: int = DEFAULT_MIN_TRADES
    sort_by: SortCriterion = SortCriterion.PROFIT_FACTOR
    max_iterations: int = DEFAULT_MAX_ITERATIONS

    def __post_init__(self) -> None:
        if not isinstance(self.space, ParameterSpace):
            raise TypeError(f"space must be a ParameterSpace, got {type(self.space).__name__}.")
        if isinstance(self.min_trades, bool) or not isinstance(self.min_trades, int):
            raise ValueError("min_trades must be an integer.")
        if self.min_trades < MIN_TRADES_FLOOR:
            raise ValueError(f"min_trades must be greater or equal to {MIN_TRADES_FLOOR}.")
        if isinstance(self.max_iterations, bool) or not isinstance(self.max_iterations, int):
            raise ValueError("max_iterations must be an integer.")
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be positive.")
        object.__setattr__(self, "sort_by", SortCriterion.parse(self.sort_by))


@dataclass(frozen=True)
class InvocationFailure:
    assignment: Assignment
    error_type: str
    error_message: str
    traceback: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "combination_index": self.assignment.index,
            "params": self.assignment.as_dict(),
            "error_type": self.error_type,
            "error_message": self.error_message,
            "traceback": self.traceback,
        }


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _append_progress(progress_log_path: Path, line: str) -> None:
    progress_log_path.parent.mkdir(parents=True, exist_ok=True)
    with progress_log_path.open("a", encoding="utf-8") as fp:
        fp.write(line.rstrip() + "\n")


class SweepRunner:
    """Runs one brute-force sweep. Single use: one ``run()`` per instance."""

    def __init__(
        self,
        config: SweepConfiguration,
        invoker: BacktestInvoker,
        listener: Optional[SweepListener] = None,
        *,
        log_every: int = DEFAULT_LOG_EVERY,
        progress_log_path: Optional[Path] = None,
        label: str = "sweep",
    ) -> None:
        if not isinstance(config, SweepConfiguration):
            raise TypeError(f"config must be a SweepConfiguration, got {type(config).__name__}.")
        if not callable(invoker):
            raise TypeError("invoker must be callable.")
        if log_every <= 0:
            raise ValueError("log_every must be positive.")

        self.config = config
        self._invoker = invoker
        self._listener = listener if listener is not None else SweepListener()
        self._log_every = int(log_every)
        self._progress_log_path = Path(progress_log_path) if progress_log_path is not None else None
        self._label = label

        self._state = SweepState.IDLE
        self._state_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._results: list[SweepResult] = []
        self._failures: list[InvocationFailure] = []
        self._ranked: Optional[list[SweepResult]] = None
        self._processed = 0
        self._total: Optional[int] = None

    @property
    def state(self) -> SweepState:
        return self._state

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def total(self) -> Optional[int]:
        return self._total

    @property
    def failures(self) -> list[InvocationFailure]:
        return list(self._failures)

    @property
    def ranked_results(self) -> Optional[list[SweepResult]]:
        if self._ranked is None:
            return None
        return list(self._ranked)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def _log(self, line: str) -> None:
        print(line)
        if self._progress_log_path is not None:
            _append_progress(self._progress_log_path, line)

    def run(self) -> Optional[list[SweepResult]]:
        """Execute the sweep on the calling thread.

        Returns the ranked results, or ``None`` when the combination count
        exceeds the iteration ceiling and nothing was run.
        """
        with self._state_lock:
            if self._state is not SweepState.IDLE:
                raise RuntimeError("SweepRunner instances are single-use.")
            self._state = SweepState.VALIDATING

        config = self.config
        total = config.space.combination_count()
        self._total = total
        if total > config.max_iterations:
            self._state = SweepState.REJECTED
            self._log(
                f"[{self._label}] rejected combinations={total} max_iterations={config.max_iterations}"
            )
            self._listener.on_iteration_limit_exceeded(total, config.max_iterations)
            return None

        self._state = SweepState.RUNNING
        self._log(
            f"[{self._label}] start {_utc_now_iso()} combinations={total} params={list(config.space.names)} "
            f"min_trades={config.min_trades} sort_by={config.sort_by.value}"
        )
        start_ts = time.perf_counter()
        cancelled = False
        finished = False

        try:
            for assignment in enumerate_assignments(config.space):
                if self._cancel_event.is_set():
                    cancelled = True
                    break
                self._run_one(assignment, total)
                if self._processed % self._log_every == 0:
                    elapsed = time.perf_counter() - start_ts
                    self._log(
                        f"[{self._label}] progress {self._processed}/{total} accepted={len(self._results)} "
                        f"errors={len(self._failures)} elapsed_s={elapsed:.2f}"
                    )
                self._listener.on_progress(self._processed, total)
            finished = True
        finally:
            # a raising listener still leaves the runner terminal with partial results
            self._ranked = rank_results(self._results, config.sort_by)
            if not finished:
                self._state = SweepState.FAILED
                self._log(f"[{self._label}] failed processed={self._processed}/{total}")

        ranked = self._ranked
        self._state = SweepState.CANCELLED if cancelled else SweepState.COMPLETED

        elapsed = time.perf_counter() - start_ts
        self._log(
            f"[{self._label}] {self._state.value} processed={self._processed}/{total} "
            f"accepted={len(ranked)} errors={len(self._failures)} elapsed_s={elapsed:.2f}"
        )
        self._listener.on_finished(list(ranked))
        return list(ranked)

    def _run_one(self, assignment: Assignment, total: int) -> None:
        config = self.config
        try:
            outcome = self._invoker(assignment)
            metrics = outcome if isinstance(outcome, BacktestMetrics) else BacktestMetrics.from_mapping(outcome)
        except Exception as exc:  # noqa: BLE001
            failure = InvocationFailure(
                assignment=assignment,
                error_type=type(exc).__name__,
                error_message=str(exc),
                traceback=traceback.format_exc(),
            )
            self._failures.append(failure)
            self._log(
                f"[error] idx={assignment.index + 1}/{total} params={assignment.as_dict()} "
                f"err={failure.error_type}: {failure.error_message}"
            )
        else:
            if passes_min_trades(metrics, config.min_trades):
                self._results.append(SweepResult(assignment=assignment, metrics=metrics))
        self._processed += 1


class SweepHandle:
    """Caller-owned handle to a sweep running on its own worker thread."""

    def __init__(self, runner: SweepRunner) -> None:
        self.runner = runner
        self._result: Optional[list[SweepResult]] = None
        self._error: Optional[Exception] = None
        self._thread = threading.Thread(target=self._work, name="sweep-runner", daemon=True)

    def _work(self) -> None:
        try:
            self._result = self.runner.run()
        except Exception as exc:  # noqa: BLE001
            self._error = exc

    def _start(self) -> None:
        self._thread.start()

    @property
    def state(self) -> SweepState:
        return self.runner.state

    def cancel(self) -> None:
        self.runner.cancel()

    def done(self) -> bool:
        return self._thread.ident is not None and not self._thread.is_alive()

    def wait(self, timeout: Optional[float] = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def result(self, timeout: Optional[float] = None) -> Optional[list[SweepResult]]:
        if not self.wait(timeout):
            raise TimeoutError("Sweep is still running.")
        if self._error is not None:
            raise self._error
        return None if self._result is None else list(self._result)


def start_sweep(
    config: SweepConfiguration,
    invoker: BacktestInvoker,
    listener: Optional[SweepListener] = None,
    **runner_kwargs: Any,
) -> SweepHandle:
    """Validate synchronously, then run the sweep on a dedicated worker thread."""
    runner = SweepRunner(config, invoker, listener, **runner_kwargs)
    handle = SweepHandle(runner)
    handle._start()
    return handle


def cancel(handle: SweepHandle) -> None:
    handle.cancel()

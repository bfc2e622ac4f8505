from __future__ import annotations

import threading

import pytest

from strategy_optimizer.sweep.events import (
    EventChannel,
    IterationLimitExceeded,
    ProgressEvent,
    SweepFinished,
    SweepListener,
)
from strategy_optimizer.sweep.results import BacktestMetrics, SortCriterion
from strategy_optimizer.sweep.runner import (
    SweepConfiguration,
    SweepRunner,
    SweepState,
    cancel,
    start_sweep,
)
from strategy_optimizer.sweep.space import Parameter, ParameterSpace


def _metrics(
    trades: int = 10,
    profit_factor: float = 1.0,
    total_profit: float = 0.0,
    max_drawdown: float = 0.0,
    true_kelly: float = 0.0,
) -> BacktestMetrics:
    return BacktestMetrics(
        total_trades=trades,
        profit_factor=profit_factor,
        total_profit=total_profit,
        max_drawdown=max_drawdown,
        true_kelly=true_kelly,
    )


def _cube(size: int = 10) -> ParameterSpace:
    return ParameterSpace(tuple(Parameter(name, 0, size - 1, 1) for name in ("a", "b", "c")))


class RecordingListener(SweepListener):
    def __init__(self) -> None:
        self.progress: list[tuple[int, int]] = []
        self.finished: list[list] = []
        self.rejections: list[tuple[int, int]] = []

    def on_iteration_limit_exceeded(self, combination_count: int, max_iterations: int) -> None:
        self.rejections.append((combination_count, max_iterations))

    def on_progress(self, processed: int, total: int) -> None:
        self.progress.append((processed, total))

    def on_finished(self, ranked_results) -> None:
        self.finished.append(list(ranked_results))


class CancelAtListener(RecordingListener):
    def __init__(self, cancel_at: int, repeats: int = 1) -> None:
        super().__init__()
        self.runner: SweepRunner | None = None
        self.cancel_at = cancel_at
        self.repeats = repeats

    def on_progress(self, processed: int, total: int) -> None:
        super().on_progress(processed, total)
        if processed == self.cancel_at:
            for _ in range(self.repeats):
                self.runner.cancel()


def test_sweep_over_ceiling_is_rejected_before_any_backtest() -> None:
    calls: list[int] = []
    listener = RecordingListener()
    runner = SweepRunner(
        SweepConfiguration(space=_cube(), min_trades=2, max_iterations=999),
        lambda a: calls.append(a.index) or _metrics(),
        listener,
    )

    assert runner.run() is None
    assert runner.state is SweepState.REJECTED
    assert calls == []
    assert listener.rejections == [(1000, 999)]
    assert listener.progress == []
    assert listener.finished == []


def test_sweep_at_exactly_the_ceiling_runs() -> None:
    listener = RecordingListener()
    runner = SweepRunner(
        SweepConfiguration(space=_cube(), min_trades=2, max_iterations=1000),
        lambda a: _metrics(),
        listener,
    )
    ranked = runner.run()
    assert runner.state is SweepState.COMPLETED
    assert len(ranked) == 1000
    assert listener.rejections == []


def test_rejection_reports_exact_count_past_64_bits() -> None:
    space = ParameterSpace(tuple(Parameter(f"p{i}", 0, 999_999, 1) for i in range(5)))
    listener = RecordingListener()
    runner = SweepRunner(SweepConfiguration(space=space), lambda a: _metrics(), listener)
    assert runner.run() is None
    assert listener.rejections == [(10**30, 50_000_000)]


def test_min_trades_filter_drops_results_before_ranking() -> None:
    space = ParameterSpace((Parameter("x", 0, 9, 1),))

    def invoker(assignment):
        x = assignment["x"]
        # fewer trades gets the better profit factor, so a missing filter would show
        return _metrics(trades=x, profit_factor=100.0 - x)

    runner = SweepRunner(SweepConfiguration(space=space, min_trades=5), invoker)
    ranked = runner.run()
    assert [r.assignment["x"] for r in ranked] == [5, 6, 7, 8, 9]


def test_backtest_failure_is_recorded_and_sweep_continues() -> None:
    space = ParameterSpace((Parameter("x", 1, 20, 1),))
    calls: list[int] = []

    def invoker(assignment):
        calls.append(assignment["x"])
        if assignment["x"] == 5:
            raise ZeroDivisionError("division by zero")
        return _metrics(profit_factor=float(assignment["x"]))

    listener = RecordingListener()
    runner = SweepRunner(SweepConfiguration(space=space, min_trades=2), invoker, listener)
    ranked = runner.run()

    assert runner.state is SweepState.COMPLETED
    assert len(calls) == 20
    assert len(ranked) == 19
    assert 5 not in {r.assignment["x"] for r in ranked}
    assert listener.progress[-1] == (20, 20)
    assert listener.progress == [(i, 20) for i in range(1, 21)]

    failures = runner.failures
    assert len(failures) == 1
    assert failures[0].assignment["x"] == 5
    assert failures[0].error_type == "ZeroDivisionError"
    assert failures[0].as_dict()["params"] == {"x": 5}


def test_malformed_metrics_count_as_failures() -> None:
    space = ParameterSpace((Parameter("x", 1, 3, 1),))

    def invoker(assignment):
        if assignment["x"] == 2:
            return {"total_trades": 10}
        return {
            "total_trades": 10,
            "profit_factor": 1.0,
            "total_profit": 1.0,
            "max_drawdown": 0.5,
            "true_kelly": 0.0,
        }

    runner = SweepRunner(SweepConfiguration(space=space, min_trades=2), invoker)
    ranked = runner.run()
    assert [r.assignment["x"] for r in ranked] == [1, 3]
    assert [f.assignment["x"] for f in runner.failures] == [2]


def test_results_are_ranked_by_configured_criterion() -> None:
    space = ParameterSpace((Parameter("x", 0, 2, 1),))
    drawdowns = {0: 500.0, 1: 100.0, 2: 300.0}
    runner = SweepRunner(
        SweepConfiguration(space=space, min_trades=2, sort_by="Lowest max drawdown"),
        lambda a: _metrics(max_drawdown=drawdowns[a["x"]]),
    )
    ranked = runner.run()
    assert runner.config.sort_by is SortCriterion.MAX_DRAWDOWN
    assert [r.metrics.max_drawdown for r in ranked] == [100.0, 300.0, 500.0]


def _run_with_cancel(repeats: int) -> tuple[SweepRunner, CancelAtListener, list[int]]:
    calls: list[int] = []

    def invoker(assignment):
        calls.append(assignment.index)
        return _metrics(profit_factor=float(assignment.index % 7))

    listener = CancelAtListener(cancel_at=10, repeats=repeats)
    runner = SweepRunner(SweepConfiguration(space=_cube(), min_trades=2), invoker, listener)
    listener.runner = runner
    runner.run()
    return runner, listener, calls


def test_cancel_after_ten_delivers_partial_ranked_results() -> None:
    runner, listener, calls = _run_with_cancel(repeats=1)

    assert runner.state is SweepState.CANCELLED
    assert calls == list(range(10))
    assert listener.progress == [(i, 1000) for i in range(1, 11)]
    assert len(listener.finished) == 1

    ranked = listener.finished[0]
    assert len(ranked) == 10
    assert {r.assignment.index for r in ranked} == set(range(10))
    factors = [r.metrics.profit_factor for r in ranked]
    assert factors == sorted(factors, reverse=True)


def test_cancel_is_idempotent() -> None:
    once_runner, once_listener, _ = _run_with_cancel(repeats=1)
    twice_runner, twice_listener, _ = _run_with_cancel(repeats=3)

    assert twice_runner.state is SweepState.CANCELLED
    assert once_listener.progress == twice_listener.progress
    assert [r.assignment for r in once_listener.finished[0]] == [
        r.assignment for r in twice_listener.finished[0]
    ]


def test_cancel_before_run_invokes_nothing() -> None:
    calls: list[int] = []
    listener = RecordingListener()
    runner = SweepRunner(
        SweepConfiguration(space=_cube(), min_trades=2),
        lambda a: calls.append(a.index) or _metrics(),
        listener,
    )
    runner.cancel()
    assert runner.run() == []
    assert runner.state is SweepState.CANCELLED
    assert calls == []
    assert listener.finished == [[]]


def test_runner_is_single_use() -> None:
    runner = SweepRunner(
        SweepConfiguration(space=ParameterSpace((Parameter("x", 1, 2, 1),)), min_trades=2),
        lambda a: _metrics(),
    )
    runner.run()
    with pytest.raises(RuntimeError, match="single-use"):
        runner.run()


def test_threaded_sweep_cancel_from_caller() -> None:
    reached = threading.Event()
    release = threading.Event()
    calls: list[int] = []

    def invoker(assignment):
        calls.append(assignment.index)
        if len(calls) == 10:
            reached.set()
            release.wait(timeout=5)
        return _metrics(profit_factor=float(assignment.index % 7))

    channel = EventChannel()
    handle = start_sweep(SweepConfiguration(space=_cube(), min_trades=2), invoker, channel)
    assert reached.wait(timeout=5)
    handle.cancel()
    cancel(handle)
    release.set()

    events = list(channel.events(timeout=5))
    assert handle.wait(timeout=5)

    progress = [e for e in events if isinstance(e, ProgressEvent)]
    assert [e.processed for e in progress] == list(range(1, 11))
    assert isinstance(events[-1], SweepFinished)
    assert sum(isinstance(e, SweepFinished) for e in events) == 1

    assert handle.state is SweepState.CANCELLED
    assert len(calls) == 10
    ranked = handle.result()
    assert list(events[-1].ranked_results) == ranked
    assert {r.assignment.index for r in ranked} == set(range(10))


def test_threaded_sweep_runs_to_completion() -> None:
    space = ParameterSpace((Parameter("x", 1, 5, 1), Parameter("y", 0.5, 1.0, 0.5)))
    channel = EventChannel()
    handle = start_sweep(
        SweepConfiguration(space=space, min_trades=2, sort_by=SortCriterion.TOTAL_PROFIT),
        lambda a: _metrics(total_profit=a["x"] * a["y"]),
        channel,
    )
    events = list(channel.events(timeout=5))
    ranked = handle.result(timeout=5)

    assert handle.done()
    assert handle.state is SweepState.COMPLETED
    assert [e.processed for e in events if isinstance(e, ProgressEvent)] == list(range(1, 11))
    assert ranked[0].assignment.as_dict() == {"x": 5, "y": 1.0}
    assert ranked[-1].assignment.as_dict() == {"x": 1, "y": 0.5}


def test_rejected_sweep_emits_only_the_limit_event() -> None:
    channel = EventChannel()
    handle = start_sweep(
        SweepConfiguration(space=_cube(), min_trades=2, max_iterations=10),
        lambda a: _metrics(),
        channel,
    )
    events = list(channel.events(timeout=5))
    assert handle.result(timeout=5) is None
    assert len(events) == 1
    event = events[0]
    assert isinstance(event, IterationLimitExceeded)
    assert "requires 1000 iterations" in event.message
    assert "maximum number of iterations is 10" in event.message


def test_listener_errors_surface_through_the_handle() -> None:
    class Exploding(SweepListener):
        def on_progress(self, processed: int, total: int) -> None:
            raise RuntimeError("listener broke")

    handle = start_sweep(
        SweepConfiguration(space=ParameterSpace((Parameter("x", 1, 2, 1),)), min_trades=2),
        lambda a: _metrics(),
        Exploding(),
    )
    with pytest.raises(RuntimeError, match="listener broke"):
        handle.result(timeout=5)
    assert handle.state is SweepState.FAILED
    assert handle.state.is_terminal


def test_listener_error_leaves_runner_terminal_with_partial_results() -> None:
    class BreaksOnThird(SweepListener):
        def on_progress(self, processed: int, total: int) -> None:
            if processed == 3:
                raise RuntimeError("listener broke")

    runner = SweepRunner(
        SweepConfiguration(space=ParameterSpace((Parameter("x", 1, 10, 1),)), min_trades=2),
        lambda a: _metrics(profit_factor=float(a["x"])),
        BreaksOnThird(),
    )
    with pytest.raises(RuntimeError, match="listener broke"):
        runner.run()

    assert runner.state is SweepState.FAILED
    assert runner.processed == 3
    assert [r.assignment["x"] for r in runner.ranked_results] == [3, 2, 1]
    with pytest.raises(RuntimeError, match="single-use"):
        runner.run()


def test_structural_errors_are_raised_synchronously() -> None:
    space = ParameterSpace((Parameter("x", 1, 2, 1),))
    with pytest.raises(TypeError):
        start_sweep(SweepConfiguration(space=space), "not callable")
    with pytest.raises(TypeError):
        SweepConfiguration(space={"x": [1, 2]})
    with pytest.raises(ValueError, match="greater or equal to 2"):
        SweepConfiguration(space=space, min_trades=1)
    with pytest.raises(ValueError, match="must be an integer"):
        SweepConfiguration(space=space, min_trades="50")
    with pytest.raises(ValueError):
        SweepConfiguration(space=space, max_iterations=0)
    with pytest.raises(ValueError):
        SweepConfiguration(space=space, sort_by="sharpe")


def test_progress_event_percent_and_eta() -> None:
    event = ProgressEvent(processed=25, total=100, elapsed_s=10.0)
    assert event.percent == 25
    assert event.eta_s == pytest.approx(30.0)
    assert event.describe() == "25 of 100 (25%)"
    assert ProgressEvent(processed=0, total=100, elapsed_s=0.0).eta_s is None


def test_progress_log_file_is_written(tmp_path) -> None:
    log_path = tmp_path / "progress.log"
    runner = SweepRunner(
        SweepConfiguration(space=ParameterSpace((Parameter("x", 1, 4, 1),)), min_trades=2),
        lambda a: _metrics(),
        log_every=2,
        progress_log_path=log_path,
    )
    runner.run()
    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("[sweep] start")
    assert sum("progress" in line for line in lines) == 2
    assert lines[-1].startswith("[sweep] completed processed=4/4")

"""Brute-force parameter sweep engine for strategy backtests."""

from .events import EventChannel, IterationLimitExceeded, ProgressEvent, SweepFinished, SweepListener
from .results import BacktestMetrics, SortCriterion, SweepResult, rank_results, results_to_frame
from .runner import (
    InvocationFailure,
    SweepConfiguration,
    SweepHandle,
    SweepRunner,
    SweepState,
    cancel,
    start_sweep,
)
from .space import Assignment, Parameter, ParameterSpace, enumerate_assignments

__all__ = [
    "Assignment",
    "BacktestMetrics",
    "EventChannel",
    "InvocationFailure",
    "IterationLimitExceeded",
    "Parameter",
    "ParameterSpace",
    "ProgressEvent",
    "SortCriterion",
    "SweepConfiguration",
    "SweepFinished",
    "SweepHandle",
    "SweepListener",
    "SweepResult",
    "SweepRunner",
    "SweepState",
    "cancel",
    "enumerate_assignments",
    "rank_results",
    "results_to_frame",
    "start_sweep",
]

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd

from .space import Assignment

METRIC_FIELDS = ("total_trades", "profit_factor", "total_profit", "max_drawdown", "true_kelly")


def _as_metric(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Metric '{field_name}' must be numeric, got {value!r}.")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Metric '{field_name}' must be numeric, got {value!r}.") from exc


@dataclass(frozen=True)
class BacktestMetrics:
    total_trades: int
    profit_factor: float
    total_profit: float
    max_drawdown: float
    true_kelly: float

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> BacktestMetrics:
        missing = [key for key in METRIC_FIELDS if key not in payload]
        if missing:
            raise ValueError(f"Backtest metrics missing keys: {missing}")
        total_trades = _as_metric(payload["total_trades"], "total_trades")
        if not total_trades.is_integer() or total_trades < 0:
            raise ValueError(f"Metric 'total_trades' must be a non-negative integer, got {payload['total_trades']!r}.")
        return cls(
            total_trades=int(total_trades),
            profit_factor=_as_metric(payload["profit_factor"], "profit_factor"),
            total_profit=_as_metric(payload["total_profit"], "total_profit"),
            max_drawdown=_as_metric(payload["max_drawdown"], "max_drawdown"),
            true_kelly=_as_metric(payload["true_kelly"], "true_kelly"),
        )

    def as_dict(self) -> dict[str, Any]:
        return {key: getattr(self, key) for key in METRIC_FIELDS}


@dataclass(frozen=True)
class SweepResult:
    assignment: Assignment
    metrics: BacktestMetrics


class SortCriterion(str, Enum):
    PROFIT_FACTOR = "profit_factor"
    TOTAL_PROFIT = "total_profit"
    MAX_DRAWDOWN = "max_drawdown"
    TRUE_KELLY = "true_kelly"

    @property
    def higher_is_better(self) -> bool:
        return self is not SortCriterion.MAX_DRAWDOWN

    @property
    def label(self) -> str:
        return _CRITERION_LABELS[self]

    @classmethod
    def parse(cls, value: SortCriterion | str) -> SortCriterion:
        """Accept a member, its value, its name, or its display label."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if text in (member.value, member.name.lower(), member.label.lower()):
                return member
        choices = ", ".join(member.value for member in cls)
        raise ValueError(f"Unknown sort criterion {value!r}. Expected one of: {choices}")


_CRITERION_LABELS = {
    SortCriterion.PROFIT_FACTOR: "Highest profit factor",
    SortCriterion.TOTAL_PROFIT: "Highest P&L",
    SortCriterion.MAX_DRAWDOWN: "Lowest max drawdown",
    SortCriterion.TRUE_KELLY: "Highest True Kelly",
}


def passes_min_trades(metrics: BacktestMetrics, min_trades: int) -> bool:
    return metrics.total_trades >= min_trades


def _ranking_key(criterion: SortCriterion):
    def key(result: SweepResult) -> tuple[bool, float]:
        value = float(getattr(result.metrics, criterion.value))
        if math.isnan(value):
            return (True, 0.0)
        if criterion is SortCriterion.MAX_DRAWDOWN:
            # drawdown may be reported signed; rank by magnitude
            return (False, abs(value))
        return (False, -value if criterion.higher_is_better else value)

    return key


def rank_results(results: Iterable[SweepResult], criterion: SortCriterion | str) -> list[SweepResult]:
    """Order results best-first; ties keep their enumeration order."""
    criterion = SortCriterion.parse(criterion)
    in_enumeration_order = sorted(results, key=lambda r: r.assignment.index)
    return sorted(in_enumeration_order, key=_ranking_key(criterion))


def results_to_frame(results: Sequence[SweepResult]) -> pd.DataFrame:
    rows: list[dict[str, Any]] = []
    for rank, result in enumerate(results, start=1):
        row: dict[str, Any] = {"rank": rank, "combination_index": result.assignment.index}
        for name, value in result.assignment.as_dict().items():
            row[f"param_{name.replace('.', '__')}"] = value
        row.update(result.metrics.as_dict())
        rows.append(row)
    if not rows:
        return pd.DataFrame(columns=["rank", "combination_index", *METRIC_FIELDS])
    return pd.DataFrame(rows)

"""Explicit strategy registry.

Strategies register a backtest function under a stable identifier at import
time; sweeps resolve identifiers here instead of importing classes by name.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import pandas as pd

from strategy_optimizer.sweep.results import BacktestMetrics

BacktestFn = Callable[[pd.DataFrame, Mapping[str, Any]], BacktestMetrics]


@dataclass(frozen=True)
class StrategyDefinition:
    name: str
    backtest: BacktestFn
    default_params: Mapping[str, Any] = field(default_factory=dict)
    required_columns: tuple[str, ...] = ("close",)
    description: str = ""


_REGISTRY: dict[str, StrategyDefinition] = {}


def register_strategy(
    name: str,
    *,
    default_params: Mapping[str, Any] | None = None,
    required_columns: tuple[str, ...] = ("close",),
    description: str = "",
) -> Callable[[BacktestFn], BacktestFn]:
    key = name.strip().lower()
    if not key:
        raise ValueError("Strategy name must be non-empty.")

    def decorator(fn: BacktestFn) -> BacktestFn:
        if key in _REGISTRY and _REGISTRY[key].backtest is not fn:
            raise ValueError(f"Strategy '{key}' is already registered.")
        _REGISTRY[key] = StrategyDefinition(
            name=key,
            backtest=fn,
            default_params=dict(default_params or {}),
            required_columns=tuple(required_columns),
            description=description,
        )
        return fn

    return decorator


def get_strategy(name: str) -> StrategyDefinition:
    key = str(name).strip().lower()
    try:
        return _REGISTRY[key]
    except KeyError:
        raise KeyError(
            f"Unknown strategy {name!r}. Registered strategies: {available_strategies()}"
        ) from None


def available_strategies() -> list[str]:
    return sorted(_REGISTRY)

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import numpy as np
import pandas as pd

from strategy_optimizer.sweep.results import BacktestMetrics

from .metrics import compute_trade_metrics
from .registry import register_strategy

DEFAULT_MOMENTUM_PARAMS: dict[str, Any] = {
    "lookback_bars": 6,
    "entry_threshold_bp": 30.0,
    "stoploss_pct": 0.008,
    "takeprofit_pct": None,
    "max_hold_bars": 720,
    "cooldown_bars": 0,
    "position_size": 1.0,
    "commission": 0.0,
}


@dataclass(frozen=True)
class MomentumParams:
    lookback_bars: int
    entry_threshold_bp: float
    stoploss_pct: float
    takeprofit_pct: Optional[float]
    max_hold_bars: int
    cooldown_bars: int
    position_size: float
    commission: float

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> MomentumParams:
        takeprofit = params.get("takeprofit_pct")
        parsed = cls(
            lookback_bars=int(params["lookback_bars"]),
            entry_threshold_bp=float(params["entry_threshold_bp"]),
            stoploss_pct=float(params["stoploss_pct"]),
            takeprofit_pct=None if takeprofit is None else float(takeprofit),
            max_hold_bars=int(params["max_hold_bars"]),
            cooldown_bars=int(params["cooldown_bars"]),
            position_size=float(params["position_size"]),
            commission=float(params["commission"]),
        )
        parsed.validate()
        return parsed

    def validate(self) -> None:
        if self.lookback_bars <= 0:
            raise ValueError("lookback_bars must be positive.")
        if self.stoploss_pct <= 0:
            raise ValueError("stoploss_pct must be positive.")
        if self.takeprofit_pct is not None and self.takeprofit_pct <= 0:
            raise ValueError("takeprofit_pct must be positive when provided.")
        if self.max_hold_bars <= 0:
            raise ValueError("max_hold_bars must be positive.")
        if self.cooldown_bars < 0:
            raise ValueError("cooldown_bars must be non-negative.")
        if self.position_size <= 0:
            raise ValueError("position_size must be positive.")
        if self.commission < 0:
            raise ValueError("commission must be non-negative.")


def simulate_momentum_trades(closes: np.ndarray, params: MomentumParams) -> list[dict[str, Any]]:
    """Long-only momentum: enter on a strong lookback return, exit on stop/target/hold/end."""
    trades: list[dict[str, Any]] = []
    entry_idx: Optional[int] = None
    entry_price = 0.0
    cooldown_remaining = 0
    last_valid_idx: Optional[int] = None
    threshold = params.entry_threshold_bp / 10_000.0

    def _close(exit_idx: int, exit_price: float, exit_reason: str) -> None:
        assert entry_idx is not None
        pnl = (exit_price - entry_price) * params.position_size - params.commission
        trades.append(
            {
                "entry_idx": entry_idx,
                "exit_idx": exit_idx,
                "entry_price": entry_price,
                "exit_price": exit_price,
                "bars_held": exit_idx - entry_idx,
                "pnl": pnl,
                "exit_reason": exit_reason,
            }
        )

    for i in range(len(closes)):
        price = float(closes[i])
        if not np.isfinite(price) or price <= 0.0:
            continue
        last_valid_idx = i

        if entry_idx is not None:
            exit_reason = None
            if price <= entry_price * (1.0 - params.stoploss_pct):
                exit_reason = "stoploss"
            elif params.takeprofit_pct is not None and price >= entry_price * (1.0 + params.takeprofit_pct):
                exit_reason = "takeprofit"
            elif i - entry_idx >= params.max_hold_bars:
                exit_reason = "max_hold"
            if exit_reason is not None:
                _close(i, price, exit_reason)
                entry_idx = None
                cooldown_remaining = params.cooldown_bars
                continue

        if cooldown_remaining > 0:
            cooldown_remaining -= 1
            continue

        if entry_idx is None and i >= params.lookback_bars:
            base = float(closes[i - params.lookback_bars])
            if base > 0.0 and np.isfinite(base) and (price / base - 1.0) >= threshold:
                entry_idx = i
                entry_price = price

    if entry_idx is not None and last_valid_idx is not None:
        _close(last_valid_idx, float(closes[last_valid_idx]), "end_of_data")
    return trades


@register_strategy(
    "momentum",
    default_params=DEFAULT_MOMENTUM_PARAMS,
    required_columns=("close",),
    description="Long-only lookback-return momentum with stop-loss, take-profit and max hold.",
)
def run_momentum_backtest(bars: pd.DataFrame, params: Mapping[str, Any]) -> BacktestMetrics:
    if "close" not in bars.columns:
        raise ValueError("Bars frame missing required column 'close'.")
    parsed = MomentumParams.from_mapping(params)
    closes = bars["close"].to_numpy(dtype=float)
    trades = simulate_momentum_trades(closes, parsed)
    return compute_trade_metrics([trade["pnl"] for trade in trades])

"""Performance metrics computed from a backtest's closed-trade P&L."""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

from strategy_optimizer.sweep.results import BacktestMetrics


def compute_profit_factor(gross_profit: float, gross_loss: float) -> float:
    """Gross profit over gross loss (both as positive amounts)."""
    if gross_loss > 0.0:
        return gross_profit / gross_loss
    if gross_profit > 0.0:
        return math.inf
    return 0.0


def compute_max_drawdown(trade_pnls: Sequence[float]) -> float:
    """Largest peak-to-trough fall of the cumulative P&L curve, starting flat."""
    if len(trade_pnls) == 0:
        return 0.0
    equity = np.concatenate([[0.0], np.cumsum(np.asarray(trade_pnls, dtype=float))])
    running_max = np.maximum.accumulate(equity)
    return float((running_max - equity).max())


def compute_true_kelly(trade_pnls: Sequence[float]) -> float:
    """Kelly fraction in percent, shrunk by ``1 - 1/sqrt(n)`` for small samples."""
    pnls = np.asarray(trade_pnls, dtype=float)
    trades = int(pnls.size)
    if trades == 0:
        return 0.0
    wins = pnls[pnls > 0.0]
    losses = pnls[pnls < 0.0]
    if wins.size == 0:
        return 0.0
    if losses.size == 0:
        kelly = 100.0
    else:
        win_loss_ratio = float(wins.mean()) / float(-losses.mean())
        p_win = wins.size / trades
        kelly = 100.0 * (p_win - (1.0 - p_win) / win_loss_ratio)
    return float(kelly * (1.0 - 1.0 / math.sqrt(trades)))


def compute_trade_metrics(trade_pnls: Sequence[float]) -> BacktestMetrics:
    pnls = np.asarray(trade_pnls, dtype=float)
    gross_profit = float(pnls[pnls > 0.0].sum())
    gross_loss = float(-pnls[pnls < 0.0].sum())
    return BacktestMetrics(
        total_trades=int(pnls.size),
        profit_factor=compute_profit_factor(gross_profit, gross_loss),
        total_profit=float(pnls.sum()),
        max_drawdown=compute_max_drawdown(pnls),
        true_kelly=compute_true_kelly(pnls),
    )

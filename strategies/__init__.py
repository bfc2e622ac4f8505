"""Strategies available to the optimizer, registered by identifier."""

from . import momentum  # noqa: F401  registers "momentum"
from .registry import StrategyDefinition, available_strategies, get_strategy, register_strategy

__all__ = ["StrategyDefinition", "available_strategies", "get_strategy", "register_strategy"]

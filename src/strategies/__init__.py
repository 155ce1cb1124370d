"""
Trading Strategies for the DEX Bot Trader.

Strategies:
- GridStrategy: Grid trading for sideways markets
- MomentumStrategy: Momentum entries confirmed by volume and RSI

StrategyManager keeps one strategy active at a time and, in auto mode,
selects it from market conditions.
"""

from src.strategies.base import BaseStrategy
from src.strategies.grid_strategy import GridLevel, GridStrategy
from src.strategies.manager import StrategyManager
from src.strategies.momentum_strategy import MomentumStrategy

__all__ = [
    "BaseStrategy",
    "GridLevel",
    "GridStrategy",
    "MomentumStrategy",
    "StrategyManager",
]

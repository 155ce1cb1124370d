"""Risk management module for the DEX Bot Trader.

This module provides:
- Capital tracking and position sizing
- Trailing stop-loss and tiered take-profit exits
- Three-level drawdown circuit breaker
- Gas cost policy
"""

from src.risk.drawdown import DrawdownManager
from src.risk.exit_manager import (
    ExitManager,
    ManagedExit,
    TakeProfitLevel,
    TakeProfitLevels,
    TrailingStopLoss,
)
from src.risk.gas import GasCheck, GasPolicy
from src.risk.position_manager import PositionManager

__all__ = [
    'PositionManager',
    'ExitManager',
    'ManagedExit',
    'TrailingStopLoss',
    'TakeProfitLevel',
    'TakeProfitLevels',
    'DrawdownManager',
    'GasPolicy',
    'GasCheck',
]

"""
Grid Trading Strategy

Places buy and sell triggers at evenly spaced price levels around a base
price. Profits from price oscillations in sideways markets.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.core.config import AnalysisConfig, GridConfig
from src.core.events import EventBus
from src.core.models import (
    GridLevelAction,
    MarketData,
    SignalAction,
    TradingSignal,
    utc_now,
)
from src.strategies.base import BaseStrategy

logger = structlog.get_logger(__name__)


@dataclass
class GridLevel:
    """One grid price level with a one-way trigger latch."""
    level_index: int
    price: Decimal
    offset: Decimal
    action: GridLevelAction
    amount_percent: Decimal
    is_triggered: bool = False


class GridStrategy(BaseStrategy):
    """
    Grid Trading Strategy.

    Strategy Logic:
    - Spread N levels evenly over [base * (1 + range_min), base * (1 + range_max)]
    - Levels below base are buy levels, above base are sell levels
    - Signal when price comes within 0.5% of an untriggered level
    - Recenter the grid when the rebalance interval has elapsed and price has
      moved more than 5% from base

    Best For: Sideways/ranging markets with moderate volatility
    """

    key = "grid"

    LEVEL_PROXIMITY = Decimal("0.005")
    REBALANCE_MIN_MOVE_PCT = Decimal("5")
    MAX_VOLATILITY = Decimal("0.15")
    SIGNAL_CONFIDENCE = 0.8

    def __init__(
        self,
        config: Optional[GridConfig] = None,
        analysis_config: Optional[AnalysisConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(
            "Grid Trading",
            config or GridConfig(),
            analysis_config=analysis_config,
            event_bus=event_bus,
            clock=clock,
        )

        self.grid_levels: List[GridLevel] = []
        self.base_price: Optional[Decimal] = None
        self.last_rebalance: Optional[datetime] = None

    def initialize(self, base_price: Decimal):
        self.base_price = base_price
        self.grid_levels = self.calculate_grid_levels(base_price)
        self.last_rebalance = self._clock()

        self.logger.info(
            "grid_strategy.initialized",
            base_price=str(base_price),
            levels=len(self.grid_levels),
            range_min=self.config.grid_range_min,
            range_max=self.config.grid_range_max,
        )

    def calculate_grid_levels(self, base_price: Decimal) -> List[GridLevel]:
        num_levels = self.config.grid_levels
        range_min = Decimal(str(self.config.grid_range_min))
        range_max = Decimal(str(self.config.grid_range_max))
        amount = Decimal(str(self.config.grid_amount_per_level))
        step = (range_max - range_min) / (num_levels - 1)

        levels = []
        for i in range(num_levels):
            offset = range_min + step * i
            if offset < 0:
                action = GridLevelAction.BUY
            elif offset > 0:
                action = GridLevelAction.SELL
            else:
                action = GridLevelAction.NEUTRAL

            levels.append(GridLevel(
                level_index=i,
                price=base_price * (1 + offset),
                offset=offset,
                action=action,
                amount_percent=amount,
            ))

        return levels

    def can_trade(self, market_data: MarketData) -> bool:
        if not self.validate_market_data(market_data):
            return False

        if market_data.volatility is not None and market_data.volatility > self.MAX_VOLATILITY:
            self.logger.debug(
                "grid_strategy.volatility_too_high",
                volatility=str(market_data.volatility),
            )
            return False

        min_liquidity = Decimal(str(self.analysis_config.min_liquidity_usd))
        if market_data.liquidity < min_liquidity:
            self.logger.debug(
                "grid_strategy.insufficient_liquidity",
                liquidity=str(market_data.liquidity),
            )
            return False

        return True

    async def analyze(self, market_data: MarketData) -> Optional[TradingSignal]:
        """Generate a grid signal when price reaches an untriggered level."""
        if not self.is_active or not self.validate_market_data(market_data):
            return None

        current_price = market_data.price

        if self.base_price is None:
            self.initialize(current_price)
            return None

        if self.should_rebalance():
            self.rebalance(current_price)

        level = self.find_closest_level(current_price)
        if level is None or level.is_triggered or level.action == GridLevelAction.NEUTRAL:
            return None

        distance = abs((current_price - level.price) / level.price)
        if distance >= self.LEVEL_PROXIMITY:
            return None

        level.is_triggered = True
        action = SignalAction.BUY if level.action == GridLevelAction.BUY else SignalAction.SELL

        signal = self._create_signal(
            action=action,
            price=current_price,
            reason=f"Price reached grid level {level.level_index + 1} ({level.price:.2f})",
            confidence=self.SIGNAL_CONFIDENCE,
            pair=market_data.pair,
            metadata={
                'level_index': level.level_index,
                'level_price': str(level.price),
                'amount_percent': str(level.amount_percent),
                'base_price': str(self.base_price),
            },
        )

        self.logger.info(
            "grid_strategy.signal",
            action=action.value,
            level=level.level_index,
            price=str(current_price),
        )
        return signal

    def find_closest_level(self, current_price: Decimal) -> Optional[GridLevel]:
        if not self.grid_levels:
            return None
        return min(self.grid_levels, key=lambda level: abs(current_price - level.price))

    def should_rebalance(self) -> bool:
        if self.last_rebalance is None:
            return False
        elapsed = (self._clock() - self.last_rebalance).total_seconds()
        return elapsed >= self.config.grid_rebalance_interval

    def rebalance(self, new_base_price: Decimal) -> bool:
        """Recenter the grid on a new price if it moved more than 5% from base."""
        price_change = self.calculate_price_change(new_base_price, self.base_price)

        if abs(price_change) <= self.REBALANCE_MIN_MOVE_PCT:
            return False

        self.logger.info(
            "grid_strategy.rebalanced",
            old_base=str(self.base_price),
            new_base=str(new_base_price),
            change_pct=f"{price_change:.2f}",
        )

        self.grid_levels = self.calculate_grid_levels(new_base_price)
        self.base_price = new_base_price
        self.last_rebalance = self._clock()
        return True

    def get_grid_state(self) -> Dict[str, Any]:
        return {
            'base_price': str(self.base_price) if self.base_price is not None else None,
            'levels': [
                {
                    'index': level.level_index,
                    'price': f"{level.price:.2f}",
                    'action': level.action.value,
                    'triggered': level.is_triggered,
                }
                for level in self.grid_levels
            ],
            'last_rebalance': self.last_rebalance.isoformat() if self.last_rebalance else None,
        }

    def reset(self):
        self.grid_levels = []
        self.base_price = None
        self.last_rebalance = None
        self.current_position = None
        self.reset_metrics()
        self.logger.info("grid_strategy.reset")

    def __str__(self) -> str:
        base = f"{self.base_price:.2f}" if self.base_price is not None else "N/A"
        return f"Grid Trading (Base: {base}, Levels: {len(self.grid_levels)}, Active: {self.is_active})"

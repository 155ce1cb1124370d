"""Strategy selection and routing.

The StrategyManager owns one instance of each strategy and keeps exactly one
of them active. In auto mode the active strategy is chosen per snapshot from
volatility, volume ratio and trend. Switches are rate limited by a cooldown;
``force_switch`` bypasses it.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from src.core.config import (
    AnalysisConfig,
    GridConfig,
    MomentumConfig,
    StrategySelectionConfig,
)
from src.core.events import EventBus, EventType
from src.core.models import (
    MarketData,
    StrategyMode,
    TradingSignal,
    TrendDirection,
    utc_now,
)
from src.strategies.base import BaseStrategy
from src.strategies.grid_strategy import GridStrategy
from src.strategies.momentum_strategy import MomentumStrategy

logger = structlog.get_logger(__name__)


class StrategyManager:
    """Selects the active strategy and routes analysis calls to it."""

    MOMENTUM_MIN_VOLATILITY = Decimal("0.15")
    MOMENTUM_MIN_VOLUME_RATIO = Decimal("1.5")
    TREND_WINDOW = 10
    TREND_THRESHOLD = Decimal("0.05")

    def __init__(
        self,
        config: Optional[StrategySelectionConfig] = None,
        strategies: Optional[Dict[str, BaseStrategy]] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
        grid_config: Optional[GridConfig] = None,
        momentum_config: Optional[MomentumConfig] = None,
        analysis_config: Optional[AnalysisConfig] = None,
    ):
        self.config = config or StrategySelectionConfig()
        self.event_bus = event_bus
        self._clock = clock

        if strategies is None:
            strategies = {
                GridStrategy.key: GridStrategy(
                    grid_config, analysis_config, event_bus=event_bus, clock=clock
                ),
                MomentumStrategy.key: MomentumStrategy(
                    momentum_config, analysis_config, event_bus=event_bus, clock=clock
                ),
            }
        self.strategies: Dict[str, BaseStrategy] = strategies

        self.mode = StrategyMode(self.config.default_strategy)
        self.switch_cooldown = timedelta(seconds=self.config.strategy_switch_cooldown)
        self.current_strategy: Optional[BaseStrategy] = None
        self.current_key: Optional[str] = None
        self.last_switch: Optional[datetime] = None

    async def initialize(self):
        """Activate the configured default strategy unless running in auto mode."""
        if self.mode == StrategyMode.AUTO:
            logger.info("strategy_manager.auto_mode")
        else:
            self.select_strategy(self.mode.value, reason="default")

    # === Selection ===

    def select_strategy(self, key: str, **metadata) -> bool:
        """
        Activate a strategy, respecting the switch cooldown.

        Returns:
            True if the strategy is active afterwards, False if the switch was
            rejected (cooldown or unknown strategy)
        """
        if key == self.current_key:
            return True

        if self.last_switch is not None and self._clock() - self.last_switch < self.switch_cooldown:
            logger.debug(
                "strategy_manager.switch_in_cooldown",
                requested=key,
                current=self.current_key,
            )
            return False

        strategy = self.strategies.get(key)
        if strategy is None:
            logger.error("strategy_manager.invalid_strategy", strategy=key)
            return False

        previous_key = self.current_key
        if self.current_strategy is not None:
            self.current_strategy.deactivate()

        self.current_strategy = strategy
        self.current_key = key
        strategy.activate()
        self.last_switch = self._clock()

        logger.info(
            "strategy_manager.strategy_selected",
            strategy=key,
            previous=previous_key,
            reason=metadata.get('reason'),
        )
        if self.event_bus is not None:
            self.event_bus.emit(
                EventType.STRATEGY_CHANGED,
                strategy=key,
                previous_strategy=previous_key,
                **{k: self._serialize(v) for k, v in metadata.items()},
            )
        return True

    def force_switch(self, key: str, reason: str = "manual") -> bool:
        """Switch regardless of cooldown; the cooldown timestamp survives a failed switch."""
        original_switch = self.last_switch
        self.last_switch = None

        success = self.select_strategy(key, reason=reason)

        if not success or (self.current_key == key and self.last_switch is None):
            self.last_switch = original_switch

        return success

    async def auto_select_strategy(self, market_data: MarketData) -> str:
        """Pick momentum in volatile, high-volume trending markets, grid otherwise."""
        volatility = market_data.volatility or Decimal("0")
        volume = market_data.volume or Decimal("0")
        reference_volume = market_data.avg_volume or volume
        volume_ratio = volume / reference_volume if reference_volume > 0 else Decimal("0")
        trend = self.detect_trend(market_data.price_history)

        logger.debug(
            "strategy_manager.market_analysis",
            volatility=str(volatility),
            volume_ratio=f"{volume_ratio:.2f}",
            trend=trend.value,
        )

        selected = GridStrategy.key
        if (
            volatility > self.MOMENTUM_MIN_VOLATILITY
            and volume_ratio > self.MOMENTUM_MIN_VOLUME_RATIO
            and trend != TrendDirection.SIDEWAYS
        ):
            selected = MomentumStrategy.key

        if selected != self.current_key:
            self.select_strategy(
                selected,
                reason="market_conditions",
                volatility=volatility,
                volume_ratio=volume_ratio,
                trend=trend.value,
            )

        return selected

    def detect_trend(self, price_history: Sequence[Decimal]) -> TrendDirection:
        """Compare the average of the last 10 prices with the 10 before them."""
        if not price_history or len(price_history) < self.TREND_WINDOW:
            return TrendDirection.INSUFFICIENT_DATA

        prices = list(price_history)
        recent = prices[-self.TREND_WINDOW:]
        older = prices[-2 * self.TREND_WINDOW:-self.TREND_WINDOW]
        if not older:
            return TrendDirection.INSUFFICIENT_DATA

        avg_recent = sum(recent, Decimal("0")) / len(recent)
        avg_older = sum(older, Decimal("0")) / len(older)
        if avg_older == 0:
            return TrendDirection.INSUFFICIENT_DATA

        diff = (avg_recent - avg_older) / avg_older
        if diff > self.TREND_THRESHOLD:
            return TrendDirection.UPTREND
        if diff < -self.TREND_THRESHOLD:
            return TrendDirection.DOWNTREND
        return TrendDirection.SIDEWAYS

    # === Routing ===

    async def analyze(self, market_data: MarketData) -> Optional[TradingSignal]:
        if self.mode == StrategyMode.AUTO:
            await self.auto_select_strategy(market_data)

        if self.current_strategy is None:
            logger.warning("strategy_manager.no_active_strategy")
            return None

        if not self.current_strategy.can_trade(market_data):
            logger.debug("strategy_manager.cannot_trade", strategy=self.current_key)
            return None

        return await self.current_strategy.analyze(market_data)

    # === Queries ===

    def get_current_strategy(self) -> Optional[BaseStrategy]:
        return self.current_strategy

    def get_all_strategies(self) -> List[BaseStrategy]:
        return list(self.strategies.values())

    def get_all_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {key: strategy.get_metrics() for key, strategy in self.strategies.items()}

    def get_state(self) -> Dict[str, Any]:
        return {
            'current_strategy': self.current_key,
            'mode': self.mode.value,
            'last_switch': self.last_switch.isoformat() if self.last_switch else None,
            'available_strategies': list(self.strategies),
            'metrics': self.get_all_metrics(),
        }

    def reset(self):
        for strategy in self.strategies.values():
            strategy.reset()
            strategy.deactivate()

        self.current_strategy = None
        self.current_key = None
        self.last_switch = None
        logger.info("strategy_manager.reset")

    @staticmethod
    def _serialize(value: Any) -> Any:
        return str(value) if isinstance(value, Decimal) else value

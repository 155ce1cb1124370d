"""Base class for all trading strategies."""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence

import structlog
from pydantic_settings import BaseSettings

from src.core.config import AnalysisConfig
from src.core.events import EventBus, EventType
from src.core.models import (
    MarketData,
    Position,
    SignalAction,
    TradeRecord,
    TradingSignal,
    utc_now,
)
from src.indicators.volatility import calculate_volatility

logger = structlog.get_logger(__name__)


class BaseStrategy(ABC):
    """Abstract base class for trading strategies.

    A strategy is a stateful signal generator. ``can_trade`` gates whether
    the market suits it, ``analyze`` turns one snapshot into at most one
    signal. Strategies start inactive; the StrategyManager activates one at a
    time.
    """

    key: ClassVar[str] = ""

    def __init__(
        self,
        name: str,
        config: BaseSettings,
        analysis_config: Optional[AnalysisConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.name = name
        self.config = config
        self.analysis_config = analysis_config or AnalysisConfig()
        self.event_bus = event_bus
        self._clock = clock
        self.is_active = False
        self.logger = logger.bind(strategy=name)

        self.current_position: Optional[Position] = None
        self.trades: List[TradeRecord] = []

        # Track strategy performance
        self.signals_generated = 0
        self.trades_executed = 0
        self.success_rate = 0.0

    @abstractmethod
    def can_trade(self, market_data: MarketData) -> bool:
        """Whether current market conditions suit this strategy."""

    @abstractmethod
    async def analyze(self, market_data: MarketData) -> Optional[TradingSignal]:
        """
        Analyze a market snapshot and generate at most one signal.

        Args:
            market_data: Current snapshot for the traded pair

        Returns:
            TradingSignal, or None when there is nothing to do or not enough
            history yet
        """

    # === Activation ===

    def activate(self):
        self.is_active = True
        self.logger.info("strategy.activated")
        if self.event_bus is not None:
            self.event_bus.emit(
                EventType.STRATEGY_SELECTED,
                strategy=self.key,
                config=self.get_config(),
            )

    def deactivate(self):
        self.is_active = False
        self.logger.info("strategy.deactivated")

    # === Position hooks ===

    def on_position_opened(self, position: Position):
        self.current_position = position
        self.logger.debug("strategy.position_opened", pair=position.pair)

    def on_position_closed(self, trade: TradeRecord):
        self.current_position = None
        self.record_trade(trade)

    def on_signal_rejected(self, signal: TradingSignal):
        """Called when a signal could not be executed."""

    def has_open_position(self) -> bool:
        return self.current_position is not None

    # === Metrics ===

    def record_signal(self, signal: TradingSignal):
        self.signals_generated += 1
        self.logger.debug(
            "strategy.signal_recorded",
            action=signal.action.value,
            price=str(signal.price),
            reason=signal.reason,
        )

    def record_trade(self, trade: TradeRecord):
        self.trades.append(trade)
        self.trades_executed += 1

        successful = sum(1 for t in self.trades if t.is_profitable)
        self.success_rate = successful / len(self.trades) * 100

        self.logger.info(
            "strategy.trade_recorded",
            pair=trade.pair,
            pnl=str(trade.realized_pnl),
            success_rate=f"{self.success_rate:.2f}",
        )

    def calculate_average_pnl(self) -> Decimal:
        if not self.trades:
            return Decimal("0")
        total = sum((t.realized_pnl for t in self.trades), Decimal("0"))
        return total / len(self.trades)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'is_active': self.is_active,
            'signals_generated': self.signals_generated,
            'trades_executed': self.trades_executed,
            'success_rate': self.success_rate,
            'total_trades': len(self.trades),
            'avg_pnl': str(self.calculate_average_pnl()),
        }

    def reset_metrics(self):
        self.signals_generated = 0
        self.trades_executed = 0
        self.success_rate = 0.0
        self.trades = []
        self.logger.info("strategy.metrics_reset")

    # === Configuration ===

    def get_config(self) -> Dict[str, Any]:
        return self.config.model_dump()

    def update_config(self, **changes):
        """Replace configuration values; the new values are validated."""
        self.config = type(self.config)(**{**self.config.model_dump(), **changes})
        self.logger.info("strategy.config_updated", changes=changes)

    # === Helpers ===

    def validate_market_data(self, market_data: MarketData) -> bool:
        missing = market_data.missing_fields()
        if missing:
            self.logger.warning("strategy.incomplete_market_data", missing=missing)
            return False
        return True

    @staticmethod
    def calculate_price_change(current_price: Decimal, previous_price: Optional[Decimal]) -> Decimal:
        """Percent change from previous to current price (0 if no previous price)."""
        if not previous_price:
            return Decimal("0")
        return (current_price - previous_price) / previous_price * 100

    @staticmethod
    def calculate_volatility(prices: Sequence[Decimal]) -> Decimal:
        volatility = calculate_volatility(prices)
        return Decimal(str(volatility)) if volatility is not None else Decimal("0")

    def _create_signal(
        self,
        action: SignalAction,
        price: Decimal,
        reason: str,
        confidence: float = 0.5,
        pair: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> TradingSignal:
        """Helper to create and record a trading signal."""
        signal = TradingSignal(
            action=action,
            confidence=confidence,
            reason=reason,
            price=price,
            strategy_name=self.key,
            pair=pair,
            timestamp=self._clock(),
            metadata=metadata or {},
        )
        self.record_signal(signal)
        return signal

    def __str__(self) -> str:
        return f"{self.name} Strategy (Active: {self.is_active}, Trades: {len(self.trades)})"

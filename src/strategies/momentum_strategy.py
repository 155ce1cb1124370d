"""
Momentum Strategy

Enters on strong recent price moves confirmed by a volume surge, and exits on
a pullback from the post-entry peak or an overbought RSI.
"""
from collections import deque
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, Optional

import structlog

from src.core.config import AnalysisConfig, MomentumConfig
from src.core.events import EventBus
from src.core.models import (
    MarketData,
    SignalAction,
    TradeRecord,
    TradingSignal,
    utc_now,
)
from src.indicators.rsi import calculate_rsi
from src.strategies.base import BaseStrategy

logger = structlog.get_logger(__name__)


class MomentumStrategy(BaseStrategy):
    """
    Momentum Strategy.

    Entry (all required):
    - Price change over the lookback window > entry threshold
    - Volume > volume multiplier x average volume of the window
    - RSI < rsi_entry + 40

    Exit (either):
    - Drop from the post-entry peak > exit threshold
    - RSI > rsi_exit

    Best For: Trending markets with elevated volatility and volume
    """

    key = "momentum"

    HISTORY_MARGIN = 10
    RSI_ENTRY_HEADROOM = 40.0
    MIN_VOLATILITY = Decimal("0.05")
    SIGNAL_CONFIDENCE = 0.85

    def __init__(
        self,
        config: Optional[MomentumConfig] = None,
        analysis_config: Optional[AnalysisConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(
            "Momentum",
            config or MomentumConfig(),
            analysis_config=analysis_config,
            event_bus=event_bus,
            clock=clock,
        )
        self._init_windows()

    def _init_windows(self):
        max_history = self.config.momentum_lookback_period + self.HISTORY_MARGIN
        self.price_history: Deque[Decimal] = deque(maxlen=max_history)
        self.volume_history: Deque[Decimal] = deque(maxlen=max_history)
        self.entry_price: Optional[Decimal] = None
        self.highest_price: Optional[Decimal] = None

    def update_config(self, **changes):
        super().update_config(**changes)
        if 'momentum_lookback_period' in changes:
            prices, volumes = list(self.price_history), list(self.volume_history)
            entry, highest = self.entry_price, self.highest_price
            self._init_windows()
            self.price_history.extend(prices)
            self.volume_history.extend(volumes)
            self.entry_price, self.highest_price = entry, highest

    def update_history(self, market_data: MarketData):
        self.price_history.append(market_data.price)
        self.volume_history.append(market_data.volume)

    def can_trade(self, market_data: MarketData) -> bool:
        if not self.validate_market_data(market_data):
            return False

        if market_data.volatility is not None and market_data.volatility < self.MIN_VOLATILITY:
            self.logger.debug(
                "momentum_strategy.volatility_too_low",
                volatility=str(market_data.volatility),
            )
            return False

        min_volume = Decimal(str(self.analysis_config.min_volume_24h_usd))
        if market_data.volume < min_volume:
            self.logger.debug(
                "momentum_strategy.insufficient_volume",
                volume=str(market_data.volume),
            )
            return False

        return True

    @property
    def in_position(self) -> bool:
        return self.entry_price is not None

    async def analyze(self, market_data: MarketData) -> Optional[TradingSignal]:
        if not self.is_active or not self.validate_market_data(market_data):
            return None

        self.update_history(market_data)

        if len(self.price_history) < self.config.momentum_lookback_period:
            self.logger.debug(
                "momentum_strategy.collecting_history",
                collected=len(self.price_history),
                required=self.config.momentum_lookback_period,
            )
            return None

        rsi = calculate_rsi(list(self.price_history), self.config.momentum_rsi_period)
        price_change = self.calculate_recent_price_change()
        avg_volume = self.calculate_average_volume()
        multiplier = Decimal(str(self.config.momentum_volume_multiplier))
        is_high_volume = market_data.volume > avg_volume * multiplier

        if not self.in_position:
            return self._find_entry_signal(market_data, price_change, rsi, is_high_volume)

        return self._find_exit_signal(market_data, rsi)

    def _find_entry_signal(
        self,
        market_data: MarketData,
        price_change: Decimal,
        rsi: Optional[float],
        is_high_volume: bool,
    ) -> Optional[TradingSignal]:
        entry_threshold = Decimal(str(self.config.momentum_entry_threshold))
        rsi_ceiling = self.config.momentum_rsi_entry + self.RSI_ENTRY_HEADROOM

        if rsi is None or price_change <= entry_threshold or not is_high_volume:
            return None
        if rsi >= rsi_ceiling:
            return None

        current_price = market_data.price
        self.entry_price = current_price
        self.highest_price = current_price

        signal = self._create_signal(
            action=SignalAction.BUY,
            price=current_price,
            reason=(
                f"Strong momentum: +{price_change * 100:.2f}%, high volume, "
                f"RSI {rsi:.1f}"
            ),
            confidence=self.SIGNAL_CONFIDENCE,
            pair=market_data.pair,
            metadata={
                'rsi': rsi,
                'price_change': str(price_change),
                'volume': str(market_data.volume),
            },
        )

        self.logger.info(
            "momentum_strategy.buy_signal",
            price=str(current_price),
            rsi=round(rsi, 1),
        )
        return signal

    def _find_exit_signal(
        self,
        market_data: MarketData,
        rsi: Optional[float],
    ) -> Optional[TradingSignal]:
        current_price = market_data.price
        exit_threshold = Decimal(str(self.config.momentum_exit_threshold))

        if current_price > self.highest_price:
            self.highest_price = current_price

        drop_from_peak = (self.highest_price - current_price) / self.highest_price
        overbought = rsi is not None and rsi > self.config.momentum_rsi_exit

        if drop_from_peak <= exit_threshold and not overbought:
            return None

        pnl_pct = (current_price - self.entry_price) / self.entry_price * 100
        if drop_from_peak > exit_threshold:
            reason = f"Dropped {drop_from_peak * 100:.2f}% from peak {self.highest_price:.2f}"
        else:
            reason = f"RSI overbought: {rsi:.1f}"

        signal = self._create_signal(
            action=SignalAction.SELL,
            price=current_price,
            reason=reason,
            confidence=self.SIGNAL_CONFIDENCE,
            pair=market_data.pair,
            metadata={
                'rsi': rsi,
                'pnl_percent': str(pnl_pct),
                'drop_from_peak': str(drop_from_peak),
            },
        )

        self.logger.info(
            "momentum_strategy.sell_signal",
            price=str(current_price),
            pnl_pct=f"{pnl_pct:.2f}",
        )
        return signal

    def on_position_closed(self, trade: TradeRecord):
        super().on_position_closed(trade)
        self.entry_price = None
        self.highest_price = None

    def on_signal_rejected(self, signal: TradingSignal):
        # A rejected sell keeps tracking while the position is still open
        if signal.action == SignalAction.BUY or not self.has_open_position():
            self.entry_price = None
            self.highest_price = None

    def calculate_recent_price_change(self) -> Decimal:
        """Fractional change from the oldest to the newest price of the lookback window."""
        lookback = self.config.momentum_lookback_period
        if len(self.price_history) < lookback:
            return Decimal("0")

        window = list(self.price_history)[-lookback:]
        oldest, latest = window[0], window[-1]
        return (latest - oldest) / oldest

    def calculate_average_volume(self) -> Decimal:
        if not self.volume_history:
            return Decimal("0")
        return sum(self.volume_history, Decimal("0")) / len(self.volume_history)

    def get_momentum_state(self) -> Dict[str, Any]:
        rsi = calculate_rsi(list(self.price_history), self.config.momentum_rsi_period)
        return {
            'price_history': [f"{p:.2f}" for p in list(self.price_history)[-10:]],
            'current_rsi': f"{rsi:.1f}" if rsi is not None else None,
            'avg_volume': f"{self.calculate_average_volume():.0f}",
            'recent_price_change': f"{self.calculate_recent_price_change() * 100:.2f}%",
            'entry_price': str(self.entry_price) if self.entry_price is not None else None,
            'highest_price': str(self.highest_price) if self.highest_price is not None else None,
            'in_position': self.in_position,
        }

    def reset(self):
        self._init_windows()
        self.current_position = None
        self.reset_metrics()
        self.logger.info("momentum_strategy.reset")

    def __str__(self) -> str:
        rsi = calculate_rsi(list(self.price_history), self.config.momentum_rsi_period)
        rsi_text = f"{rsi:.1f}" if rsi is not None else "N/A"
        return f"Momentum Strategy (RSI: {rsi_text}, Position: {self.in_position}, Active: {self.is_active})"

"""Gas cost policy.

Gas estimation belongs to the executor; this module only decides whether an
estimated cost is acceptable relative to the trade value.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import structlog

from src.core.config import RiskConfig
from src.core.events import EventBus, EventType
from src.core.models import utc_now

logger = structlog.get_logger(__name__)


@dataclass
class GasCheck:
    """Result of a gas acceptability check.

    Attributes:
        acceptable: Whether the estimated cost is within the allowance
        estimated_gas: Estimated cost in native token
        max_gas: Allowed cost in native token
        metadata: Additional diagnostic information
    """
    acceptable: bool
    estimated_gas: Decimal
    max_gas: Decimal
    metadata: Dict[str, Any] = field(default_factory=dict)


class GasPolicy:
    """Caps gas spend at a fraction of trade value, with a native-token floor."""

    TREND_WINDOW = 10
    TREND_THRESHOLD = Decimal("0.1")

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
        history_size: int = 100,
    ):
        self.config = config or RiskConfig()
        self.event_bus = event_bus
        self._clock = clock

        self.max_gas_percent = Decimal(str(self.config.max_gas_percent))
        self.min_gas_native = Decimal(str(self.config.min_gas_native))
        self.gas_price_history: Deque[Tuple[datetime, Decimal]] = deque(maxlen=history_size)

    def calculate_max_gas(
        self, trade_value_usd: Decimal, native_price_usd: Decimal
    ) -> Decimal:
        """Maximum gas in native token: trade value share, floored at the minimum."""
        if native_price_usd <= 0:
            raise ValueError("native_price_usd must be > 0")

        max_from_trade = trade_value_usd * self.max_gas_percent / native_price_usd
        max_gas = max(max_from_trade, self.min_gas_native)

        logger.debug(
            "gas.max_calculated",
            max_gas=str(max_gas),
            trade_value_usd=str(trade_value_usd),
        )
        return max_gas

    def is_gas_acceptable(
        self,
        trade_value_usd: Decimal,
        native_price_usd: Decimal,
        estimated_cost_native: Decimal,
    ) -> GasCheck:
        max_gas = self.calculate_max_gas(trade_value_usd, native_price_usd)
        acceptable = estimated_cost_native <= max_gas

        payload = {
            'estimated_gas': str(estimated_cost_native),
            'max_gas': str(max_gas),
            'trade_value_usd': str(trade_value_usd),
        }

        if acceptable:
            logger.info("gas.acceptable", **payload)
            self._publish(EventType.GAS_ACCEPTABLE, **payload)
        else:
            logger.warning("gas.too_high", **payload)
            self._publish(EventType.GAS_TOO_HIGH, **payload)

        return GasCheck(
            acceptable=acceptable,
            estimated_gas=estimated_cost_native,
            max_gas=max_gas,
            metadata={'native_price_usd': str(native_price_usd)},
        )

    # === Gas price history ===

    def record_gas_price(self, gas_price: Decimal):
        self.gas_price_history.append((self._clock(), gas_price))

    def get_average_gas_price(self, last_n: int = 20) -> Optional[Decimal]:
        if not self.gas_price_history:
            return None
        recent = [price for _, price in list(self.gas_price_history)[-last_n:]]
        return sum(recent, Decimal("0")) / len(recent)

    def get_gas_trend(self) -> str:
        """'rising', 'falling' or 'stable' comparing the last two windows of prices."""
        prices = [price for _, price in self.gas_price_history]
        if len(prices) < 2 * self.TREND_WINDOW:
            return "insufficient_data"

        recent = prices[-self.TREND_WINDOW:]
        older = prices[-2 * self.TREND_WINDOW:-self.TREND_WINDOW]
        avg_recent = sum(recent, Decimal("0")) / len(recent)
        avg_older = sum(older, Decimal("0")) / len(older)

        if avg_older == 0:
            return "stable"

        diff = (avg_recent - avg_older) / avg_older
        if diff > self.TREND_THRESHOLD:
            return "rising"
        if diff < -self.TREND_THRESHOLD:
            return "falling"
        return "stable"

    def _publish(self, event_type: EventType, **data):
        if self.event_bus is not None:
            self.event_bus.emit(event_type, **data)

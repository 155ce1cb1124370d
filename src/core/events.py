"""In-process event bus connecting the decision engine to its observers.

Risk managers, strategies and the trading engine publish typed events;
logging and persistence collaborators subscribe to them. Delivery is
synchronous and in subscription order, so a handler observes state exactly as
it was when the event was published.
"""
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from src.core.models import utc_now

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Event catalogue."""
    # Bot lifecycle
    BOT_STARTED = "bot.started"
    BOT_STOPPED = "bot.stopped"
    BOT_PAUSED = "bot.paused"
    BOT_RESUMED = "bot.resumed"
    BOT_ERROR = "bot.error"

    # Market data
    MARKET_DATA_COLLECTED = "market.data.collected"
    MARKET_DATA_ERROR = "market.data.error"

    # Strategy
    STRATEGY_SELECTED = "strategy.selected"
    STRATEGY_CHANGED = "strategy.changed"

    # Trading signals
    TRADE_SIGNAL_BUY = "trade.signal.buy"
    TRADE_SIGNAL_SELL = "trade.signal.sell"

    # Trade execution
    TRADE_EXECUTED = "trade.executed"
    TRADE_FAILED = "trade.failed"
    TRADE_CANCELLED = "trade.cancelled"

    # Risk management
    STOP_LOSS_TRIGGERED = "risk.stop_loss_triggered"
    TAKE_PROFIT_TRIGGERED = "risk.take_profit_triggered"
    DRAWDOWN_LEVEL_1 = "risk.drawdown.level1"
    DRAWDOWN_LEVEL_2 = "risk.drawdown.level2"
    DRAWDOWN_LEVEL_3 = "risk.drawdown.level3"
    CONSERVATIVE_RESET = "risk.conservative_reset"

    # Reporting
    REPORT_GENERATED = "report.generated"
    CYCLE_STARTED = "cycle.started"
    CYCLE_ENDED = "cycle.ended"

    # Gas management
    GAS_TOO_HIGH = "gas.too_high"
    GAS_ACCEPTABLE = "gas.acceptable"


DRAWDOWN_LEVEL_EVENTS = {
    1: EventType.DRAWDOWN_LEVEL_1,
    2: EventType.DRAWDOWN_LEVEL_2,
    3: EventType.DRAWDOWN_LEVEL_3,
}


class Event(BaseModel):
    """A published event and its structured payload."""
    event_type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


EventHandler = Callable[[Event], Any]


class EventBus:
    """Publish/subscribe channel keyed by ``EventType``.

    Handler exceptions are logged and do not stop delivery to the remaining
    handlers or abort the publisher.
    """

    def __init__(self, history_size: int = 500):
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._history: Deque[Event] = deque(maxlen=history_size)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe a handler to every event type."""
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def unsubscribe_all(self, handler: EventHandler) -> None:
        for event_type in list(self._handlers):
            self.unsubscribe(event_type, handler)

    def publish(self, event: Event) -> None:
        self._history.append(event)
        for handler in list(self._handlers.get(event.event_type, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "event_bus.handler_error",
                    event_type=event.event_type.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )

    def emit(self, event_type: EventType, **data: Any) -> Event:
        """Build and publish an event in one call."""
        event = Event(event_type=event_type, data=data)
        self.publish(event)
        return event

    def get_history(
        self,
        event_type: Optional[EventType] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """Recently published events, oldest first."""
        events = [
            e for e in self._history
            if event_type is None or e.event_type == event_type
        ]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        self._history.clear()

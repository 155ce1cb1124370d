"""Drawdown tracking and the three-level circuit breaker.

Drawdown is measured from the running capital peak:

    current_drawdown = (current_capital - peak_capital) / peak_capital  (<= 0)

Every capital update evaluates all configured levels in ascending order of
severity. Each level fires at most once per run, even if the drawdown
oscillates around its threshold. Firing executes the level's action:

- pause: no new entries until the pause deadline passes
- pause_and_reset: pause, then request a reset to the conservative setup
- stop: terminal for the run; only ``reset()`` clears it

Pauses are stored as deadlines and cleared lazily by ``is_trading_paused()``.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.core.config import BotConfig, RiskConfig
from src.core.events import DRAWDOWN_LEVEL_EVENTS, EventBus, EventType
from src.core.models import DrawdownAction, DrawdownLevel, utc_now

logger = structlog.get_logger(__name__)


class DrawdownManager:
    """Capital peak tracking and circuit breaker for one trading run."""

    def __init__(
        self,
        initial_capital: Optional[Decimal] = None,
        levels: Optional[List[DrawdownLevel]] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if initial_capital is None:
            initial_capital = Decimal(str(BotConfig().initial_capital))
        if levels is None:
            levels = RiskConfig().drawdown_levels

        self.levels = sorted(levels, key=lambda level: level.percent, reverse=True)
        self.event_bus = event_bus
        self._clock = clock

        self._start_capital = initial_capital
        self._init_state()

    def _init_state(self):
        self.initial_capital = self._start_capital
        self.peak_capital = self._start_capital
        self.current_capital = self._start_capital
        self.current_drawdown = Decimal("0")
        self.max_drawdown_reached = Decimal("0")

        self.triggered_levels: List[int] = []
        self.current_level: Optional[int] = None

        self.is_paused = False
        self.pause_until: Optional[datetime] = None
        self.is_stopped = False

    # === Capital updates ===

    def update_capital(self, new_capital: Decimal) -> List[DrawdownLevel]:
        """
        Record new capital, recompute drawdown and fire any new levels.

        Returns:
            Levels fired by this update, in ascending order of severity
        """
        self.current_capital = new_capital

        if new_capital > self.peak_capital:
            self.peak_capital = new_capital
            logger.debug("drawdown.new_peak", peak_capital=str(new_capital))

        if self.peak_capital > 0:
            self.current_drawdown = min(
                (self.current_capital - self.peak_capital) / self.peak_capital,
                Decimal("0"),
            )

        if self.current_drawdown < self.max_drawdown_reached:
            self.max_drawdown_reached = self.current_drawdown

        return self.check_drawdown_levels()

    def check_drawdown_levels(self) -> List[DrawdownLevel]:
        fired = []
        for index, level in enumerate(self.levels):
            if self.current_drawdown <= level.percent and index not in self.triggered_levels:
                self._trigger_level(index, level)
                fired.append(level)
        return fired

    def _trigger_level(self, index: int, level: DrawdownLevel):
        self.triggered_levels.append(index)
        self.current_level = index + 1
        drawdown_pct = abs(self.current_drawdown * 100)

        logger.error(
            "drawdown.level_triggered",
            level=index + 1,
            drawdown_pct=f"{drawdown_pct:.2f}",
            peak_capital=str(self.peak_capital),
            current_capital=str(self.current_capital),
            action=level.action.value,
            message=level.message,
        )

        event_type = DRAWDOWN_LEVEL_EVENTS.get(index + 1)
        if event_type is not None:
            self._publish(
                event_type,
                level=index + 1,
                drawdown_percent=str(drawdown_pct),
                peak_capital=str(self.peak_capital),
                current_capital=str(self.current_capital),
                action=level.action.value,
                duration=level.duration,
            )

        self._execute_action(level)

    def _execute_action(self, level: DrawdownLevel):
        if level.action == DrawdownAction.PAUSE:
            self.pause_trading(level.duration)
        elif level.action == DrawdownAction.PAUSE_AND_RESET:
            self.pause_trading(level.duration)
            self._reset_to_conservative()
        elif level.action == DrawdownAction.STOP:
            self._stop_completely()

    # === Actions ===

    def pause_trading(self, duration_seconds: Optional[int]):
        """Suspend new entries for a duration. A stopped run is not paused."""
        if not duration_seconds or self.is_stopped:
            return

        self.is_paused = True
        self.pause_until = self._clock() + timedelta(seconds=duration_seconds)

        logger.warning(
            "drawdown.trading_paused",
            duration_seconds=duration_seconds,
            pause_until=self.pause_until.isoformat(),
        )
        self._publish(
            EventType.BOT_PAUSED,
            reason="drawdown",
            duration=duration_seconds,
            pause_until=self.pause_until.isoformat(),
        )

    def resume_trading(self):
        if not self.is_paused:
            return

        self.is_paused = False
        self.pause_until = None

        logger.info("drawdown.trading_resumed")
        self._publish(EventType.BOT_RESUMED, reason="drawdown_pause_ended")

    def _reset_to_conservative(self):
        logger.warning("drawdown.reset_to_conservative", new_strategy="grid")
        self._publish(
            EventType.CONSERVATIVE_RESET,
            reason="drawdown_reset",
            new_strategy="grid",
            conservative=True,
        )

    def _stop_completely(self):
        self.is_stopped = True
        self.is_paused = False
        self.pause_until = None

        logger.critical(
            "drawdown.bot_stopped",
            drawdown_pct=f"{self.current_drawdown * 100:.2f}",
            message="Manual intervention required",
        )
        self._publish(
            EventType.BOT_STOPPED,
            reason="max_drawdown",
            drawdown=str(self.current_drawdown * 100),
        )

    # === Queries ===

    def is_trading_paused(self) -> bool:
        """True while a pause is active; an expired pause is cleared here."""
        if not self.is_paused:
            return False

        if self.pause_until is None or self._clock() >= self.pause_until:
            self.resume_trading()
            return False

        return True

    def can_trade(self) -> bool:
        return not self.is_stopped and not self.is_trading_paused()

    def get_remaining_pause_time(self) -> int:
        """Seconds left in the current pause, 0 when not paused."""
        if not self.is_paused or self.pause_until is None:
            return 0
        remaining = (self.pause_until - self._clock()).total_seconds()
        return max(0, int(remaining))

    def get_state(self) -> Dict[str, Any]:
        return {
            'initial_capital': str(self.initial_capital),
            'peak_capital': str(self.peak_capital),
            'current_capital': str(self.current_capital),
            'current_drawdown': f"{self.current_drawdown * 100:.2f}",
            'max_drawdown_reached': f"{self.max_drawdown_reached * 100:.2f}",
            'current_level': self.current_level,
            'triggered_levels': [i + 1 for i in self.triggered_levels],
            'is_paused': self.is_paused,
            'is_stopped': self.is_stopped,
            'remaining_pause_time': self.get_remaining_pause_time(),
        }

    def reset(self, initial_capital: Optional[Decimal] = None):
        """Start a new run; clears triggered levels, pauses and the stop."""
        if initial_capital is not None:
            self._start_capital = initial_capital
        self._init_state()
        logger.info("drawdown.reset", initial_capital=str(self._start_capital))

    def _publish(self, event_type: EventType, **data):
        if self.event_bus is not None:
            self.event_bus.emit(event_type, **data)

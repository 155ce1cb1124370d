"""Exit management: trailing stop-loss and tiered take-profit per position.

Each managed pair gets a fresh TrailingStopLoss and TakeProfitLevels pair.
On every price update the stop-loss is evaluated first; when it fires the
take-profit levels are not evaluated for that update.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.core.config import RiskConfig
from src.core.events import EventBus, EventType
from src.core.models import (
    ExitDecision,
    ExitReason,
    PartialExit,
    TakeProfitLevelConfig,
    utc_now,
)

logger = structlog.get_logger(__name__)


def _pnl_percent(entry_price: Decimal, price: Decimal) -> Decimal:
    return (price - entry_price) / entry_price * 100


class TrailingStopLoss:
    """
    Stop that trails the highest observed price.

    ``stop_price = highest_price * (1 - trailing_percent)`` is recomputed only
    when a new high is set, so it never decreases. ``is_triggered`` latches.
    """

    def __init__(self, entry_price: Decimal, trailing_percent: Decimal):
        self.entry_price = entry_price
        self.trailing_percent = trailing_percent
        self.highest_price = entry_price
        self.stop_price = entry_price * (1 - trailing_percent)
        self.is_triggered = False

    def update(self, current_price: Decimal) -> bool:
        """Feed a price; True only on the update that triggers the stop."""
        if current_price > self.highest_price:
            self.highest_price = current_price
            self.stop_price = current_price * (1 - self.trailing_percent)
            logger.debug(
                "stop_loss.raised",
                stop_price=str(self.stop_price),
                highest_price=str(self.highest_price),
            )

        if current_price <= self.stop_price and not self.is_triggered:
            self.is_triggered = True
            logger.warning(
                "stop_loss.triggered",
                price=str(current_price),
                stop_price=str(self.stop_price),
                pnl_pct=f"{_pnl_percent(self.entry_price, current_price):.2f}",
            )
            return True

        return False

    def get_state(self) -> Dict[str, Any]:
        return {
            'entry_price': str(self.entry_price),
            'highest_price': str(self.highest_price),
            'stop_price': str(self.stop_price),
            'trailing_percent': str(self.trailing_percent * 100),
            'is_triggered': self.is_triggered,
        }


@dataclass
class TakeProfitLevel:
    """A take-profit target with a one-way trigger latch."""
    level_index: int
    percent: Decimal
    amount: Decimal
    target_price: Decimal
    is_triggered: bool = False


class TakeProfitLevels:
    """Ordered take-profit levels for one position (ascending by percent)."""

    def __init__(self, entry_price: Decimal, levels: List[TakeProfitLevelConfig]):
        self.entry_price = entry_price
        self.levels = [
            TakeProfitLevel(
                level_index=index + 1,
                percent=level.percent,
                amount=level.amount,
                target_price=entry_price * (1 + level.percent),
            )
            for index, level in enumerate(sorted(levels, key=lambda l: l.percent))
        ]
        self.executed_levels: List[TakeProfitLevel] = []

    def check_levels(self, current_price: Decimal) -> List[TakeProfitLevel]:
        """Trigger every untriggered level at or below the price; return the new ones."""
        triggered = []

        for level in self.levels:
            if not level.is_triggered and current_price >= level.target_price:
                level.is_triggered = True
                self.executed_levels.append(level)
                triggered.append(level)
                logger.info(
                    "take_profit.level_triggered",
                    level=level.level_index,
                    price=str(current_price),
                    target_price=str(level.target_price),
                    amount=str(level.amount),
                )

        return triggered

    def all_levels_executed(self) -> bool:
        return all(level.is_triggered for level in self.levels)

    def get_next_level(self) -> Optional[TakeProfitLevel]:
        return next((l for l in self.levels if not l.is_triggered), None)

    def get_state(self) -> Dict[str, Any]:
        return {
            'entry_price': str(self.entry_price),
            'levels': [
                {
                    'level_index': l.level_index,
                    'target_price': f"{l.target_price:.2f}",
                    'percent': f"+{l.percent * 100:.0f}%",
                    'amount_to_sell': f"{l.amount * 100:.0f}%",
                    'triggered': l.is_triggered,
                }
                for l in self.levels
            ],
            'executed_count': len(self.executed_levels),
            'total_levels': len(self.levels),
            'all_executed': self.all_levels_executed(),
        }


@dataclass
class ManagedExit:
    """Exit-management record for one pair."""
    pair: str
    entry_price: Decimal
    stop_loss: TrailingStopLoss
    take_profit: TakeProfitLevels
    start_time: datetime


class ExitManager:
    """
    Per-pair exit state machine: not managed -> managed -> exited.

    ``update`` checks the trailing stop before the take-profit levels.
    Partial take-profit exits are reported to the caller, who executes the
    sells and keeps the pair managed until a full exit.
    """

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or RiskConfig()
        self.event_bus = event_bus
        self._clock = clock

        self.trailing_percent = self.config.stop_loss_trailing
        self.take_profit_levels = self.config.take_profit_levels
        self.active_exits: Dict[str, ManagedExit] = {}

    def set_trailing_percent(self, trailing_percent: Decimal):
        """Change the trailing distance for positions managed from now on."""
        logger.info(
            "exit_manager.trailing_percent_changed",
            before=str(self.trailing_percent),
            after=str(trailing_percent),
        )
        self.trailing_percent = trailing_percent

    def start_managing(self, pair: str, entry_price: Decimal) -> bool:
        if pair in self.active_exits:
            logger.warning("exit_manager.already_managing", pair=pair)
            return False

        managed = ManagedExit(
            pair=pair,
            entry_price=entry_price,
            stop_loss=TrailingStopLoss(entry_price, self.trailing_percent),
            take_profit=TakeProfitLevels(entry_price, self.take_profit_levels),
            start_time=self._clock(),
        )
        self.active_exits[pair] = managed

        logger.info(
            "exit_manager.started",
            pair=pair,
            entry_price=str(entry_price),
            stop_price=str(managed.stop_loss.stop_price),
            take_profit_levels=len(managed.take_profit.levels),
        )
        return True

    def update(self, pair: str, current_price: Decimal) -> ExitDecision:
        """
        Evaluate exits for a pair at the given price.

        Returns:
            ExitDecision with ``should_exit`` for stop-loss or when the last
            take-profit level fires, ``partial_exit`` for intermediate levels,
            or a hold decision.
        """
        managed = self.active_exits.get(pair)
        if managed is None:
            logger.warning("exit_manager.not_managing", pair=pair)
            return ExitDecision.hold()

        pnl_pct = _pnl_percent(managed.entry_price, current_price)

        if managed.stop_loss.update(current_price):
            self._publish(
                EventType.STOP_LOSS_TRIGGERED,
                pair=pair,
                entry_price=str(managed.entry_price),
                exit_price=str(current_price),
                highest_price=str(managed.stop_loss.highest_price),
                pnl_percent=str(pnl_pct),
            )
            return ExitDecision(
                should_exit=True,
                reason=ExitReason.STOP_LOSS,
                exit_price=current_price,
                pnl_percent=pnl_pct,
            )

        triggered = managed.take_profit.check_levels(current_price)
        if not triggered:
            return ExitDecision.hold()

        for level in triggered:
            self._publish(
                EventType.TAKE_PROFIT_TRIGGERED,
                pair=pair,
                level=level.level_index,
                entry_price=str(managed.entry_price),
                exit_price=str(current_price),
                percent=str(level.percent * 100),
                amount_to_sell=str(level.amount * 100),
                pnl_percent=str(pnl_pct),
            )

        if managed.take_profit.all_levels_executed():
            return ExitDecision(
                should_exit=True,
                reason=ExitReason.ALL_TAKE_PROFIT_LEVELS,
                exit_price=current_price,
                pnl_percent=pnl_pct,
            )

        return ExitDecision(
            should_exit=False,
            exit_price=current_price,
            pnl_percent=pnl_pct,
            partial_exit=[
                PartialExit(
                    level_index=level.level_index,
                    amount_percent=level.amount,
                    target_price=level.target_price,
                    current_price=current_price,
                )
                for level in triggered
            ],
        )

    def pending_exit_reason(self, pair: str) -> Optional[ExitReason]:
        """
        Full-exit reason whose trigger has already latched for a managed pair.

        The stop-loss and take-profit latches fire once; while the pair is
        still managed after that, the full exit has not been completed yet.
        """
        managed = self.active_exits.get(pair)
        if managed is None:
            return None
        if managed.stop_loss.is_triggered:
            return ExitReason.STOP_LOSS
        if managed.take_profit.levels and managed.take_profit.all_levels_executed():
            return ExitReason.ALL_TAKE_PROFIT_LEVELS
        return None

    def stop_managing(self, pair: str):
        if self.active_exits.pop(pair, None) is not None:
            logger.info("exit_manager.stopped", pair=pair)

    def is_managing(self, pair: str) -> bool:
        return pair in self.active_exits

    def get_exit_state(self, pair: str) -> Optional[Dict[str, Any]]:
        managed = self.active_exits.get(pair)
        if managed is None:
            logger.warning("exit_manager.not_managing", pair=pair)
            return None

        return {
            'pair': pair,
            'entry_price': str(managed.entry_price),
            'elapsed_seconds': int((self._clock() - managed.start_time).total_seconds()),
            'stop_loss': managed.stop_loss.get_state(),
            'take_profit': managed.take_profit.get_state(),
        }

    def get_all_active_exits(self) -> List[Dict[str, Any]]:
        return [self.get_exit_state(pair) for pair in list(self.active_exits)]

    def reset(self):
        self.active_exits.clear()
        self.trailing_percent = self.config.stop_loss_trailing
        logger.info("exit_manager.reset")

    def _publish(self, event_type: EventType, **data):
        if self.event_bus is not None:
            self.event_bus.emit(event_type, **data)

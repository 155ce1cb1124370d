"""Capital tracking and position lifecycle.

The PositionManager owns the run's capital and the set of open positions,
keyed by trading pair. Invested capital is never counted twice:

    available_capital = current_capital - sum(invested_amount of open positions)

New entries are gated by ``can_open_position()`` so available capital never
goes negative through sizing.
"""
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime

import structlog

from src.core.config import BotConfig
from src.core.models import Position, PositionSize, TradeRecord, utc_now

logger = structlog.get_logger(__name__)


class PositionManager:
    """
    Tracks capital and open positions, and sizes new positions.

    At most one position is open per pair. Realized PnL from closes and
    partial reductions is folded back into capital.
    """

    MIN_POSITION_SIZE = Decimal("10")

    # Volatility at which the size reduction reaches its 50% floor
    VOLATILITY_SCALE = Decimal("0.5")
    MIN_VOLATILITY_ADJUSTMENT = Decimal("0.5")

    def __init__(
        self,
        config: Optional[BotConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or BotConfig()
        self._clock = clock

        self.initial_capital = Decimal(str(self.config.initial_capital))
        self.max_position_percent = Decimal(str(self.config.max_position_percent))
        self.current_capital = self.initial_capital
        self.open_positions: Dict[str, Position] = {}

    # === Capital ===

    def update_capital(self, new_capital: Decimal):
        """Set current capital and log the change."""
        previous = self.current_capital
        change_pct = (
            (new_capital - previous) / previous * 100 if previous != 0 else Decimal("0")
        )

        logger.info(
            "position_manager.capital_updated",
            before=str(previous),
            after=str(new_capital),
            change_pct=f"{change_pct:.2f}",
        )

        self.current_capital = new_capital

    def get_available_capital(self) -> Decimal:
        invested = sum(
            (p.invested_amount for p in self.open_positions.values()), Decimal("0")
        )
        return self.current_capital - invested

    def set_max_position_percent(self, percent: Decimal):
        """Change the sizing fraction (used by conservative mode)."""
        logger.info(
            "position_manager.max_position_percent_changed",
            before=str(self.max_position_percent),
            after=str(percent),
        )
        self.max_position_percent = percent

    # === Sizing ===

    def calculate_position_size(
        self,
        current_price: Decimal,
        volatility: Optional[Decimal] = None,
    ) -> PositionSize:
        """
        Size a new position from available capital.

        Args:
            current_price: Expected entry price, must be > 0
            volatility: Optional volatility ratio; higher values shrink the
                size down to at most a 50% reduction

        Returns:
            PositionSize with USD amount, token amount and percent of capital
        """
        if current_price <= 0:
            raise ValueError("current_price must be > 0")

        available = max(self.get_available_capital(), Decimal("0"))
        amount_usd = available * self.max_position_percent

        if volatility is not None:
            adjustment = max(
                self.MIN_VOLATILITY_ADJUSTMENT,
                Decimal("1") - Decimal(str(volatility)) / self.VOLATILITY_SCALE,
            )
            amount_usd *= adjustment
            logger.debug(
                "position_manager.volatility_adjustment",
                volatility=str(volatility),
                adjustment=str(adjustment),
            )

        percent = (
            amount_usd / self.current_capital * 100
            if self.current_capital > 0 else Decimal("0")
        )

        return PositionSize(
            amount_usd=amount_usd,
            amount_token=amount_usd / current_price,
            percent=percent,
        )

    def can_open_position(self) -> bool:
        available = self.get_available_capital()
        if available < self.MIN_POSITION_SIZE:
            logger.warning(
                "position_manager.insufficient_capital",
                available=str(available),
                minimum=str(self.MIN_POSITION_SIZE),
            )
            return False
        return True

    # === Position lifecycle ===

    def open_position(
        self,
        pair: str,
        entry_price: Decimal,
        amount_usd: Decimal,
        amount_token: Decimal,
        strategy_name: Optional[str] = None,
    ) -> bool:
        """Open a position; returns False without changes if the pair is already open."""
        if self.has_open_position(pair):
            logger.warning("position_manager.position_exists", pair=pair)
            return False

        position = Position(
            pair=pair,
            entry_price=entry_price,
            entry_time=self._clock(),
            invested_amount=amount_usd,
            token_amount=amount_token,
            strategy_name=strategy_name,
        )
        self.open_positions[pair] = position

        logger.info(
            "position_manager.position_opened",
            pair=pair,
            entry_price=str(entry_price),
            amount_usd=str(amount_usd),
            amount_token=str(amount_token),
        )
        return True

    def update_position(self, pair: str, current_price: Decimal) -> Optional[Position]:
        position = self.open_positions.get(pair)
        if position is None:
            logger.warning("position_manager.position_not_found", pair=pair)
            return None

        position.mark_to_market(current_price)

        logger.debug(
            "position_manager.position_updated",
            pair=pair,
            price=str(current_price),
            unrealized_pnl_pct=f"{position.unrealized_pnl_percent:.2f}",
        )
        return position

    def close_position(
        self,
        pair: str,
        exit_price: Decimal,
        reason: Optional[str] = None,
    ) -> Optional[TradeRecord]:
        """
        Close the full position for a pair.

        Realized PnL is folded into capital and the position is removed.

        Returns:
            TradeRecord, or None if no position is open for the pair
        """
        position = self.open_positions.get(pair)
        if position is None:
            logger.warning("position_manager.position_not_found", pair=pair)
            return None

        trade = self._realize(
            position,
            token_amount=position.token_amount,
            invested_amount=position.invested_amount,
            exit_price=exit_price,
            is_partial=False,
            reason=reason,
        )
        del self.open_positions[pair]

        logger.info(
            "position_manager.position_closed",
            pair=pair,
            exit_price=str(exit_price),
            realized_pnl=str(trade.realized_pnl),
            realized_pnl_pct=f"{trade.realized_pnl_percent:.2f}",
            duration=self.calculate_duration(position.entry_time),
            reason=reason,
        )
        return trade

    def reduce_position(
        self,
        pair: str,
        fraction: Decimal,
        exit_price: Decimal,
        reason: Optional[str] = None,
    ) -> Optional[TradeRecord]:
        """
        Sell a fraction of the position's initial token amount.

        Cost basis is released pro rata. The position is removed once no
        tokens remain.

        Returns:
            Partial TradeRecord, or None if no position is open for the pair
        """
        position = self.open_positions.get(pair)
        if position is None:
            logger.warning("position_manager.position_not_found", pair=pair)
            return None

        if fraction <= 0 or position.token_amount <= 0:
            return None

        tokens = min(position.initial_token_amount * fraction, position.token_amount)
        cost_basis = position.invested_amount * tokens / position.token_amount

        trade = self._realize(
            position,
            token_amount=tokens,
            invested_amount=cost_basis,
            exit_price=exit_price,
            is_partial=True,
            reason=reason,
        )

        position.token_amount -= tokens
        position.invested_amount -= cost_basis
        position.mark_to_market(exit_price)

        logger.info(
            "position_manager.position_reduced",
            pair=pair,
            fraction=str(fraction),
            tokens_sold=str(tokens),
            tokens_remaining=str(position.token_amount),
            realized_pnl=str(trade.realized_pnl),
        )

        if position.token_amount <= 0:
            del self.open_positions[pair]

        return trade

    def _realize(
        self,
        position: Position,
        token_amount: Decimal,
        invested_amount: Decimal,
        exit_price: Decimal,
        is_partial: bool,
        reason: Optional[str],
    ) -> TradeRecord:
        realized_pnl = token_amount * exit_price - invested_amount
        realized_pnl_pct = (
            realized_pnl / invested_amount * 100 if invested_amount > 0 else Decimal("0")
        )

        self.update_capital(self.current_capital + realized_pnl)

        return TradeRecord(
            pair=position.pair,
            entry_price=position.entry_price,
            exit_price=exit_price,
            entry_time=position.entry_time,
            exit_time=self._clock(),
            invested_amount=invested_amount,
            token_amount=token_amount,
            realized_pnl=realized_pnl,
            realized_pnl_percent=realized_pnl_pct,
            is_partial=is_partial,
            close_reason=reason,
            strategy_name=position.strategy_name,
        )

    # === Queries ===

    def has_open_position(self, pair: str) -> bool:
        return pair in self.open_positions

    def get_position(self, pair: str) -> Optional[Position]:
        return self.open_positions.get(pair)

    def get_all_positions(self) -> List[Position]:
        return list(self.open_positions.values())

    def get_total_exposure(self) -> Dict[str, Any]:
        total_invested = sum(
            (p.invested_amount for p in self.open_positions.values()), Decimal("0")
        )
        percent = (
            total_invested / self.current_capital * 100
            if self.current_capital > 0 else Decimal("0")
        )
        market_value = sum(
            (p.current_value for p in self.open_positions.values()), Decimal("0")
        )
        return {
            'total_invested': total_invested,
            'market_value': market_value,
            'percent': percent,
            'num_positions': len(self.open_positions),
        }

    def get_total_unrealized_pnl(self) -> Dict[str, Decimal]:
        total = sum(
            (p.unrealized_pnl for p in self.open_positions.values()), Decimal("0")
        )
        percent = (
            total / self.current_capital * 100
            if self.current_capital > 0 else Decimal("0")
        )
        return {'amount': total, 'percent': percent}

    def calculate_duration(self, entry_time: datetime) -> str:
        """Human-readable time since entry, e.g. '2h 15min'."""
        seconds = int((self._clock() - entry_time).total_seconds())
        hours, remainder = divmod(max(seconds, 0), 3600)
        return f"{hours}h {remainder // 60}min"

    def get_summary(self) -> Dict[str, Any]:
        exposure = self.get_total_exposure()
        unrealized = self.get_total_unrealized_pnl()

        return {
            'current_capital': str(self.current_capital),
            'available_capital': str(self.get_available_capital()),
            'total_exposure': str(exposure['total_invested']),
            'market_value': str(exposure['market_value']),
            'exposure_percent': f"{exposure['percent']:.2f}",
            'open_positions': exposure['num_positions'],
            'unrealized_pnl': str(unrealized['amount']),
            'unrealized_pnl_percent': f"{unrealized['percent']:.2f}",
        }

    def reset(self):
        """Restore initial capital and sizing, and drop all positions."""
        self.current_capital = self.initial_capital
        self.max_position_percent = Decimal(str(self.config.max_position_percent))
        self.open_positions.clear()
        logger.info("position_manager.reset")

"""Main trading engine - orchestrates all components.

One engine trades one pair. Each cycle runs to completion before the next
starts:

1. Fetch a market snapshot (with retry)
2. Mark the open position to market and run exit checks
3. Skip new entries while the circuit breaker is paused or stopped
4. Ask the active strategy for a signal and execute it

A failed external call leaves capital and positions exactly as they were.
"""
import asyncio
import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.core.config import AppConfig, app_config
from src.core.events import EventBus, EventType
from src.core.models import (
    DrawdownAction,
    DrawdownLevel,
    MarketData,
    PartialExit,
    StrategyMode,
    TradeRecord,
    TradingSignal,
    utc_now,
)
from src.risk.drawdown import DrawdownManager
from src.risk.exit_manager import ExitManager
from src.risk.gas import GasPolicy
from src.risk.position_manager import PositionManager
from src.storage.database import Database, EventRecorder
from src.strategies.base import BaseStrategy
from src.strategies.grid_strategy import GridStrategy
from src.strategies.manager import StrategyManager
from src.utils.logging_config import setup_logging
from src.utils.retry import with_retry

logger = structlog.get_logger(__name__)


# =============================================================================
# External collaborator interfaces
# =============================================================================

@dataclass
class ExecutionResult:
    """Outcome of a swap submitted by a TradeExecutor.

    Attributes:
        success: Whether the swap was confirmed
        price: Effective execution price
        amount_token: Token quantity bought or sold
        amount_usd: USD value spent or received
        tx_hash: Transaction identifier, if any
        error: Failure description when not successful
    """
    success: bool
    price: Decimal = Decimal("0")
    amount_token: Decimal = Decimal("0")
    amount_usd: Decimal = Decimal("0")
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass
class GasQuote:
    """Estimated gas cost of a swap, in native token, plus the native token's USD price."""
    estimated_cost_native: Decimal
    native_price_usd: Decimal


class MarketDataProvider(ABC):
    """Source of per-cycle market snapshots."""

    @abstractmethod
    async def get_market_data(self, pair: str) -> MarketData:
        """Return the current snapshot for a pair. Network failures raise."""


class TradeExecutor(ABC):
    """Submits swaps. Signing, routing and confirmation live behind this interface."""

    @abstractmethod
    async def buy(
        self, pair: str, amount_usd: Decimal, price: Decimal, slippage_tolerance: Decimal
    ) -> ExecutionResult:
        """Swap ``amount_usd`` of the quote asset into the pair's token.

        The swap must not fill worse than ``price`` by more than
        ``slippage_tolerance`` (a ratio).
        """

    @abstractmethod
    async def sell(
        self, pair: str, amount_token: Decimal, price: Decimal, slippage_tolerance: Decimal
    ) -> ExecutionResult:
        """Swap ``amount_token`` of the pair's token back into the quote asset."""

    async def estimate_gas(self, pair: str, amount_usd: Decimal) -> Optional[GasQuote]:
        """Gas estimate for a swap of the given size; None when gas does not apply."""
        return None


class PaperTradeExecutor(TradeExecutor):
    """Fills every swap in-process at the requested price."""

    def __init__(self, gas_quote: Optional[GasQuote] = None):
        self.gas_quote = gas_quote
        self.executions: List[Dict[str, Any]] = []

    async def buy(
        self, pair: str, amount_usd: Decimal, price: Decimal, slippage_tolerance: Decimal
    ) -> ExecutionResult:
        result = ExecutionResult(
            success=True,
            price=price,
            amount_token=amount_usd / price,
            amount_usd=amount_usd,
            tx_hash=f"paper-{len(self.executions) + 1}",
        )
        self._record('buy', pair, slippage_tolerance, result)
        return result

    async def sell(
        self, pair: str, amount_token: Decimal, price: Decimal, slippage_tolerance: Decimal
    ) -> ExecutionResult:
        result = ExecutionResult(
            success=True,
            price=price,
            amount_token=amount_token,
            amount_usd=amount_token * price,
            tx_hash=f"paper-{len(self.executions) + 1}",
        )
        self._record('sell', pair, slippage_tolerance, result)
        return result

    async def estimate_gas(self, pair: str, amount_usd: Decimal) -> Optional[GasQuote]:
        return self.gas_quote

    def _record(self, side: str, pair: str, slippage_tolerance: Decimal, result: ExecutionResult):
        self.executions.append({
            'side': side,
            'pair': pair,
            'slippage_tolerance': slippage_tolerance,
            'result': result,
        })


class TradeExecutionError(Exception):
    """A swap was rejected or not confirmed."""


# =============================================================================
# Trading Engine
# =============================================================================

class TradingEngine:
    """
    Main trading engine that orchestrates all components.

    Responsibilities:
    - Runs the per-cycle decision flow for one pair
    - Executes entries, full exits and take-profit partial exits
    - Applies circuit breaker reactions (pause, conservative reset, stop)
    - Publishes lifecycle events and persists trades when a database is set
    """

    def __init__(
        self,
        pair: str,
        market_data_provider: MarketDataProvider,
        executor: Optional[TradeExecutor] = None,
        config: Optional[AppConfig] = None,
        event_bus: Optional[EventBus] = None,
        database: Optional[Database] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable = asyncio.sleep,
        position_manager: Optional[PositionManager] = None,
        exit_manager: Optional[ExitManager] = None,
        drawdown_manager: Optional[DrawdownManager] = None,
        strategy_manager: Optional[StrategyManager] = None,
        gas_policy: Optional[GasPolicy] = None,
    ):
        self.pair = pair
        self.config = config or app_config
        self.market_data_provider = market_data_provider
        self.executor = executor or PaperTradeExecutor()
        self.event_bus = event_bus or EventBus()
        self.database = database
        self._clock = clock
        self._sleep = sleep

        self.position_manager = position_manager or PositionManager(
            self.config.bot, clock=clock
        )
        self.exit_manager = exit_manager or ExitManager(
            self.config.risk, event_bus=self.event_bus, clock=clock
        )
        self.drawdown_manager = drawdown_manager or DrawdownManager(
            initial_capital=self.position_manager.current_capital,
            levels=self.config.risk.drawdown_levels,
            event_bus=self.event_bus,
            clock=clock,
        )
        self.strategy_manager = strategy_manager or StrategyManager(
            self.config.selection,
            event_bus=self.event_bus,
            clock=clock,
            grid_config=self.config.grid,
            momentum_config=self.config.momentum,
            analysis_config=self.config.analysis,
        )
        self.gas_policy = gas_policy or GasPolicy(
            self.config.risk, event_bus=self.event_bus, clock=clock
        )

        self._retry = with_retry(
            max_retries=self.config.bot.retry_attempts,
            base_delay=self.config.bot.retry_base_delay,
            max_delay=self.config.bot.retry_max_delay,
            sleep=sleep,
        )
        self.slippage_tolerance = Decimal(str(self.config.risk.slippage_tolerance))

        self.recorder: Optional[EventRecorder] = None
        self.pending_partial_exits: List[PartialExit] = []
        self.cycle_id: Optional[str] = None
        self.cycle_count = 0
        self.conservative_mode = False
        self.halted = False
        self._running = False

    # === Lifecycle ===

    async def start(self):
        """Initialize strategies and persistence, then mark the engine running."""
        system = self.config.system
        logger.info(
            "engine.starting",
            pair=self.pair,
            app=system.app_name,
            version=system.app_version,
            environment=system.environment,
        )

        await self.strategy_manager.initialize()

        if self.database is not None:
            await self.database.initialize()
            self.cycle_id = await self.database.start_cycle(
                initial_capital=self.position_manager.current_capital,
                strategy=self.strategy_manager.mode.value,
                start_time=self._clock(),
            )
            self.recorder = EventRecorder(self.database, self.event_bus)
            self.recorder.cycle_id = self.cycle_id

        self._running = True
        self.event_bus.emit(
            EventType.BOT_STARTED,
            pair=self.pair,
            mode=self.config.bot.trading_mode,
            initial_capital=str(self.position_manager.current_capital),
        )

        logger.info(
            "engine.started",
            pair=self.pair,
            capital=str(self.position_manager.current_capital),
            strategy_mode=self.strategy_manager.mode.value,
        )

    async def stop(self, reason: str = "manual"):
        """Stop the engine and finalize the persisted cycle."""
        logger.info("engine.stopping", reason=reason)
        self._running = False

        if not self.halted:
            self.event_bus.emit(
                EventType.BOT_STOPPED,
                reason=reason,
                capital=str(self.position_manager.current_capital),
            )

        if self.database is not None and self.cycle_id is not None:
            await self._flush_events()
            await self.database.finalize_cycle(
                self.cycle_id,
                final_capital=self.position_manager.current_capital,
                max_drawdown=self.drawdown_manager.max_drawdown_reached,
                end_time=self._clock(),
            )
            if self.recorder is not None:
                self.recorder.close()
                self.recorder = None

        logger.info("engine.stopped", reason=reason)

    async def run(self, max_cycles: Optional[int] = None):
        """Start, run cycles every polling interval until stopped, then stop."""
        await self.start()
        try:
            while self._running:
                await self.run_cycle()
                if max_cycles is not None and self.cycle_count >= max_cycles:
                    break
                if self._running:
                    await self._sleep(self.config.bot.polling_interval)
        finally:
            await self.stop(reason="max_drawdown" if self.halted else "manual")

    @property
    def is_running(self) -> bool:
        return self._running

    # === Cycle ===

    async def run_cycle(self) -> Dict[str, Any]:
        """Run one trading cycle and return a summary of what happened."""
        self.cycle_count += 1
        summary: Dict[str, Any] = {
            'cycle': self.cycle_count,
            'status': 'completed',
            'signal': None,
            'trades': [],
        }
        self.event_bus.emit(EventType.CYCLE_STARTED, cycle=self.cycle_count, pair=self.pair)

        try:
            market_data = await self._retry(self.market_data_provider.get_market_data)(self.pair)
        except Exception as e:
            logger.error("engine.market_data_error", pair=self.pair, error=str(e))
            self.event_bus.emit(EventType.MARKET_DATA_ERROR, pair=self.pair, error=str(e))
            summary['status'] = 'market_data_error'
            return await self._end_cycle(summary)

        self.event_bus.emit(
            EventType.MARKET_DATA_COLLECTED,
            pair=self.pair,
            price=str(market_data.price) if market_data.price is not None else None,
        )

        if market_data.price is not None and self.position_manager.has_open_position(self.pair):
            summary['trades'].extend(await self._manage_exits(market_data.price))

        if self.halted or self.drawdown_manager.is_stopped:
            summary['status'] = 'stopped'
            return await self._end_cycle(summary)

        if self.drawdown_manager.is_trading_paused():
            logger.info(
                "engine.trading_paused",
                remaining_seconds=self.drawdown_manager.get_remaining_pause_time(),
            )
            summary['status'] = 'paused'
            return await self._end_cycle(summary)

        signal = await self.strategy_manager.analyze(market_data)
        if signal is not None:
            summary['signal'] = signal
            trade = await self._process_signal(signal, market_data)
            if trade is not None:
                summary['trades'].append(trade)

        return await self._end_cycle(summary)

    async def _end_cycle(self, summary: Dict[str, Any]) -> Dict[str, Any]:
        self.event_bus.emit(
            EventType.CYCLE_ENDED,
            cycle=self.cycle_count,
            status=summary['status'],
            capital=str(self.position_manager.current_capital),
        )
        await self._flush_events()
        return summary

    # === Signals ===

    async def _process_signal(
        self, signal: TradingSignal, market_data: MarketData
    ) -> Optional[Any]:
        logger.info(
            "engine.signal_received",
            strategy=signal.strategy_name,
            action=signal.action.value,
            price=str(signal.price),
            confidence=signal.confidence,
            reason=signal.reason,
        )

        event_type = EventType.TRADE_SIGNAL_BUY if signal.is_buy else EventType.TRADE_SIGNAL_SELL
        self.event_bus.emit(
            event_type,
            pair=self.pair,
            strategy=signal.strategy_name,
            price=str(signal.price),
            confidence=signal.confidence,
            reason=signal.reason,
        )

        if signal.is_buy:
            return await self._execute_buy(signal, market_data)
        return await self._execute_sell(signal)

    async def _execute_buy(self, signal: TradingSignal, market_data: MarketData):
        strategy = self._strategy(signal.strategy_name)

        if self.position_manager.has_open_position(self.pair):
            logger.info("engine.position_already_open", pair=self.pair)
            self._reject(strategy, signal)
            return None

        if not self.position_manager.can_open_position():
            self._reject(strategy, signal)
            return None

        size = self.position_manager.calculate_position_size(
            signal.price, market_data.volatility
        )
        if size.amount_usd <= 0:
            logger.warning("engine.zero_size", pair=self.pair)
            self._reject(strategy, signal)
            return None

        try:
            quote = await self.executor.estimate_gas(self.pair, size.amount_usd)
        except Exception as e:
            self._trade_failed("buy", str(e))
            self._reject(strategy, signal)
            return None

        if quote is not None:
            check = self.gas_policy.is_gas_acceptable(
                size.amount_usd, quote.native_price_usd, quote.estimated_cost_native
            )
            if not check.acceptable:
                self.event_bus.emit(
                    EventType.TRADE_CANCELLED,
                    pair=self.pair,
                    side="buy",
                    reason="gas_too_high",
                )
                self._reject(strategy, signal)
                return None

        try:
            result = await self._submit(
                self.executor.buy, self.pair, size.amount_usd, signal.price
            )
        except Exception as e:
            self._trade_failed("buy", str(e))
            self._reject(strategy, signal)
            return None

        self.position_manager.open_position(
            self.pair,
            entry_price=result.price,
            amount_usd=result.amount_usd,
            amount_token=result.amount_token,
            strategy_name=signal.strategy_name,
        )
        self.exit_manager.start_managing(self.pair, result.price)

        position = self.position_manager.get_position(self.pair)
        if strategy is not None:
            strategy.on_position_opened(position)

        self.event_bus.emit(
            EventType.TRADE_EXECUTED,
            pair=self.pair,
            side="buy",
            price=str(result.price),
            amount_usd=str(result.amount_usd),
            amount_token=str(result.amount_token),
            strategy=signal.strategy_name,
            tx_hash=result.tx_hash,
        )
        logger.info(
            "engine.position_opened",
            pair=self.pair,
            price=str(result.price),
            amount_usd=str(result.amount_usd),
        )
        return position

    async def _execute_sell(self, signal: TradingSignal) -> Optional[TradeRecord]:
        if not self.position_manager.has_open_position(self.pair):
            logger.info("engine.no_position_to_sell", pair=self.pair)
            self._reject(self._strategy(signal.strategy_name), signal)
            return None
        return await self._close_position(signal.price, reason="strategy_signal")

    # === Exits ===

    async def _manage_exits(self, price: Decimal) -> List[TradeRecord]:
        """
        Run exit checks for the open position and execute the resulting sells.

        Exit triggers latch in the exit manager, so a full exit whose sell
        failed is re-issued from the latched state on the next cycle. Partial
        exits whose sell failed are kept in ``pending_partial_exits`` and
        retried the same way.
        """
        self.position_manager.update_position(self.pair, price)

        pending_reason = self.exit_manager.pending_exit_reason(self.pair)
        if pending_reason is not None:
            logger.warning("engine.retrying_exit", pair=self.pair, reason=pending_reason.value)
            trade = await self._close_position(price, reason=pending_reason.value)
            return [trade] if trade is not None else []

        decision = self.exit_manager.update(self.pair, price)

        if decision.should_exit:
            trade = await self._close_position(price, reason=decision.reason.value)
            return [trade] if trade is not None else []

        partials = self.pending_partial_exits + list(decision.partial_exit or [])
        self.pending_partial_exits = []

        trades = []
        for partial in partials:
            trade = await self._reduce_position(
                partial.amount_percent,
                price,
                reason=f"take_profit_level_{partial.level_index}",
            )
            if trade is not None:
                trades.append(trade)
            elif self.position_manager.has_open_position(self.pair):
                self.pending_partial_exits.append(partial)
        return trades

    async def _close_position(self, price: Decimal, reason: str) -> Optional[TradeRecord]:
        position = self.position_manager.get_position(self.pair)
        if position is None:
            return None

        try:
            result = await self._submit(
                self.executor.sell, self.pair, position.token_amount, price
            )
        except Exception as e:
            self._trade_failed("sell", str(e))
            return None

        trade = self.position_manager.close_position(self.pair, result.price, reason=reason)
        self.exit_manager.stop_managing(self.pair)
        self.pending_partial_exits = []

        strategy = self._strategy(position.strategy_name)
        if strategy is not None:
            strategy.on_position_closed(trade)

        await self._after_trade(trade, result)
        return trade

    async def _reduce_position(
        self, fraction: Decimal, price: Decimal, reason: str
    ) -> Optional[TradeRecord]:
        position = self.position_manager.get_position(self.pair)
        if position is None:
            return None

        amount_token = min(position.initial_token_amount * fraction, position.token_amount)

        try:
            result = await self._submit(self.executor.sell, self.pair, amount_token, price)
        except Exception as e:
            self._trade_failed("sell", str(e))
            return None

        trade = self.position_manager.reduce_position(
            self.pair, fraction, result.price, reason=reason
        )
        if trade is None:
            return None

        if not self.position_manager.has_open_position(self.pair):
            self.exit_manager.stop_managing(self.pair)
            self.pending_partial_exits = []
            strategy = self._strategy(position.strategy_name)
            if strategy is not None:
                strategy.on_position_closed(trade)

        await self._after_trade(trade, result)
        return trade

    async def _after_trade(self, trade: TradeRecord, result: ExecutionResult):
        self.event_bus.emit(
            EventType.TRADE_EXECUTED,
            pair=self.pair,
            side="sell",
            price=str(trade.exit_price),
            amount_token=str(trade.token_amount),
            realized_pnl=str(trade.realized_pnl),
            is_partial=trade.is_partial,
            reason=trade.close_reason,
            tx_hash=result.tx_hash,
        )

        if self.database is not None:
            await self.database.save_trade(trade, cycle_id=self.cycle_id)

        fired = self.drawdown_manager.update_capital(self.position_manager.current_capital)
        self._react_to_drawdown(fired)

    # === Circuit breaker reactions ===

    def _react_to_drawdown(self, fired: List[DrawdownLevel]):
        for level in fired:
            if level.action == DrawdownAction.PAUSE_AND_RESET:
                self.apply_conservative_mode()
            elif level.action == DrawdownAction.STOP:
                self._halt()

    def apply_conservative_mode(self):
        """Switch to grid with reduced position size and a tighter trailing stop."""
        risk = self.config.risk
        self.strategy_manager.force_switch(GridStrategy.key, reason="drawdown_reset")
        self.strategy_manager.mode = StrategyMode.GRID
        self.position_manager.set_max_position_percent(
            Decimal(str(risk.conservative_position_percent))
        )
        self.exit_manager.set_trailing_percent(Decimal(str(risk.conservative_stop_loss_trailing)))
        self.conservative_mode = True

        logger.warning(
            "engine.conservative_mode",
            max_position_percent=risk.conservative_position_percent,
            stop_loss_trailing=risk.conservative_stop_loss_trailing,
        )

    def _halt(self):
        self.halted = True
        self._running = False
        logger.critical("engine.halted", reason="max_drawdown", pair=self.pair)

    # === Helpers ===

    async def _submit(self, operation, *args) -> ExecutionResult:
        """Submit a swap with the slippage bound, a confirmation timeout and retries."""
        timeout = self.config.risk.order_timeout

        @functools.wraps(operation)
        async def submit_with_timeout(*call_args):
            return await asyncio.wait_for(
                operation(*call_args, self.slippage_tolerance), timeout=timeout
            )

        try:
            result = await self._retry(submit_with_timeout)(*args)
        except asyncio.TimeoutError as e:
            raise TradeExecutionError(f"order not confirmed within {timeout}s") from e

        if not result.success:
            raise TradeExecutionError(result.error or "execution failed")
        return result

    def _trade_failed(self, side: str, error: str):
        logger.error("engine.trade_failed", pair=self.pair, side=side, error=error)
        self.event_bus.emit(EventType.TRADE_FAILED, pair=self.pair, side=side, error=error)

    def _reject(self, strategy: Optional[BaseStrategy], signal: TradingSignal):
        if strategy is not None:
            strategy.on_signal_rejected(signal)

    def _strategy(self, key: Optional[str]) -> Optional[BaseStrategy]:
        if key is None:
            return None
        return self.strategy_manager.strategies.get(key)

    async def _flush_events(self):
        if self.recorder is not None and self.recorder.pending:
            await self.recorder.flush()

    def get_status(self) -> Dict[str, Any]:
        """Get current engine status."""
        return {
            'running': self._running,
            'halted': self.halted,
            'pair': self.pair,
            'cycle_count': self.cycle_count,
            'conservative_mode': self.conservative_mode,
            'positions': self.position_manager.get_summary(),
            'drawdown': self.drawdown_manager.get_state(),
            'strategy': self.strategy_manager.get_state(),
            'exits': self.exit_manager.get_all_active_exits(),
            'pending_partial_exits': len(self.pending_partial_exits),
        }


async def run_bot(
    pair: str,
    market_data_provider: MarketDataProvider,
    executor: Optional[TradeExecutor] = None,
    config: Optional[AppConfig] = None,
    max_cycles: Optional[int] = None,
    **engine_kwargs,
) -> TradingEngine:
    """
    Run a trading bot for one pair until it stops.

    Configures logging and opens the configured database before the engine
    starts; the database is closed when the run ends.

    Returns:
        The stopped engine, for status inspection
    """
    config = config or app_config
    setup_logging(config.logging)

    database = Database(config.database.database_url)
    engine = TradingEngine(
        pair,
        market_data_provider,
        executor=executor,
        config=config,
        database=database,
        **engine_kwargs,
    )
    try:
        await engine.run(max_cycles=max_cycles)
    finally:
        await database.close()
    return engine

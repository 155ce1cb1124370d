"""Database storage for trading runs, trades and bus events."""
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, select
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from src.core.config import app_config
from src.core.events import Event, EventBus
from src.core.models import TradeRecord, utc_now

logger = structlog.get_logger(__name__)

Base = declarative_base()


class CycleModel(Base):
    """SQLAlchemy model for a trading cycle (one bot run)."""
    __tablename__ = 'cycles'

    cycle_id = Column(String, primary_key=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    network = Column(String, nullable=True)
    strategy = Column(String, nullable=True)
    initial_capital = Column(Numeric(36, 18), nullable=False)
    final_capital = Column(Numeric(36, 18), nullable=True)
    pnl = Column(Numeric(36, 18), nullable=True)
    pnl_percent = Column(Numeric(36, 18), nullable=True)
    total_trades = Column(Integer, default=0)
    winning_trades = Column(Integer, default=0)
    losing_trades = Column(Integer, default=0)
    win_rate = Column(Numeric(36, 18), nullable=True)
    max_drawdown = Column(Numeric(36, 18), default=0)
    metrics_json = Column(JSON, default=dict)


class TradeModel(Base):
    """SQLAlchemy model for closed and partially closed trades."""
    __tablename__ = 'trades'

    id = Column(String, primary_key=True)
    cycle_id = Column(String, ForeignKey('cycles.cycle_id'), nullable=True)
    pair = Column(String, nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=False)
    exit_price = Column(Numeric(36, 18), nullable=False)
    entry_time = Column(DateTime(timezone=True), nullable=False)
    exit_time = Column(DateTime(timezone=True), nullable=False)
    invested_amount = Column(Numeric(36, 18), nullable=False)
    token_amount = Column(Numeric(36, 18), nullable=False)
    realized_pnl = Column(Numeric(36, 18), nullable=False)
    realized_pnl_pct = Column(Numeric(36, 18), nullable=False)
    is_partial = Column(Boolean, default=False)
    strategy_name = Column(String, nullable=True)
    close_reason = Column(String, nullable=True)


class EventModel(Base):
    """SQLAlchemy model for published bus events."""
    __tablename__ = 'events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_id = Column(String, ForeignKey('cycles.cycle_id'), nullable=True)
    event_type = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    data_json = Column(JSON, default=dict)


def generate_cycle_id(timestamp: datetime) -> str:
    """Cycle identifier of the form cycle-YYYY-MM-DD-HHMMSS-<8 hex chars>."""
    return f"cycle-{timestamp:%Y-%m-%d}-{timestamp:%H%M%S}-{uuid4().hex[:8]}"


def calculate_trade_metrics(trades: List[TradeRecord]) -> Dict[str, Any]:
    """Aggregate statistics over a list of trades."""
    metrics: Dict[str, Any] = {
        'avg_trade_size': "0",
        'avg_profit': "0",
        'avg_loss': "0",
        'profit_factor': None,
        'max_consecutive_wins': 0,
        'max_consecutive_losses': 0,
    }
    if not trades:
        return metrics

    profits = [t.realized_pnl for t in trades if t.is_profitable]
    losses = [t.realized_pnl for t in trades if t.realized_pnl < 0]

    total_invested = sum((t.invested_amount for t in trades), Decimal("0"))
    metrics['avg_trade_size'] = str(total_invested / len(trades))
    if profits:
        metrics['avg_profit'] = str(sum(profits, Decimal("0")) / len(profits))
    if losses:
        metrics['avg_loss'] = str(abs(sum(losses, Decimal("0")) / len(losses)))
        metrics['profit_factor'] = str(
            sum(profits, Decimal("0")) / abs(sum(losses, Decimal("0")))
        )

    wins = losses_run = max_wins = max_losses = 0
    for trade in trades:
        if trade.is_profitable:
            wins += 1
            losses_run = 0
            max_wins = max(max_wins, wins)
        elif trade.realized_pnl < 0:
            losses_run += 1
            wins = 0
            max_losses = max(max_losses, losses_run)

    metrics['max_consecutive_wins'] = max_wins
    metrics['max_consecutive_losses'] = max_losses
    return metrics


class Database:
    """Async database interface."""

    def __init__(self, db_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = db_url or app_config.database.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        engine_kwargs: Dict[str, Any] = {'echo': False}
        if db_url.endswith(':memory:'):
            # Keep a single connection so the in-memory schema survives
            engine_kwargs['poolclass'] = StaticPool
            engine_kwargs['connect_args'] = {'check_same_thread': False}
        elif db_url.startswith('sqlite+aiosqlite:///'):
            Path(db_url[len('sqlite+aiosqlite:///'):]).parent.mkdir(parents=True, exist_ok=True)

        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Cycle operations
    async def start_cycle(
        self,
        initial_capital: Decimal,
        strategy: Optional[str] = None,
        network: Optional[str] = None,
        start_time: Optional[datetime] = None,
    ) -> str:
        """Create a new cycle row and return its ID."""
        start_time = start_time or utc_now()
        cycle_id = generate_cycle_id(start_time)

        async with self.session_maker() as session:
            session.add(CycleModel(
                cycle_id=cycle_id,
                start_time=start_time,
                network=network,
                strategy=strategy,
                initial_capital=initial_capital,
                metrics_json={},
            ))
            await session.commit()

        logger.info("database.cycle_started", cycle_id=cycle_id)
        return cycle_id

    async def finalize_cycle(
        self,
        cycle_id: str,
        final_capital: Decimal,
        max_drawdown: Decimal = Decimal("0"),
        end_time: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """Close a cycle: compute PnL, win rate and trade metrics."""
        end_time = end_time or utc_now()
        trades = await self.get_trades(cycle_id=cycle_id)

        async with self.session_maker() as session:
            cycle = await session.get(CycleModel, cycle_id)
            if cycle is None:
                logger.warning("database.cycle_not_found", cycle_id=cycle_id)
                return None

            winning = sum(1 for t in trades if t.is_profitable)
            losing = sum(1 for t in trades if t.realized_pnl < 0)
            initial = Decimal(str(cycle.initial_capital))
            start_time = cycle.start_time
            if start_time.tzinfo is None and end_time.tzinfo is not None:
                start_time = start_time.replace(tzinfo=end_time.tzinfo)

            cycle.end_time = end_time
            cycle.duration_seconds = int((end_time - start_time).total_seconds())
            cycle.final_capital = final_capital
            cycle.pnl = final_capital - initial
            cycle.pnl_percent = (final_capital - initial) / initial * 100 if initial else Decimal("0")
            cycle.total_trades = len(trades)
            cycle.winning_trades = winning
            cycle.losing_trades = losing
            cycle.win_rate = Decimal(winning) / len(trades) * 100 if trades else None
            cycle.max_drawdown = max_drawdown
            cycle.metrics_json = calculate_trade_metrics(trades)

            await session.commit()

            logger.info(
                "database.cycle_finalized",
                cycle_id=cycle_id,
                pnl=str(cycle.pnl),
                total_trades=len(trades),
            )
            return self._cycle_to_dict(cycle)

    async def get_cycle(self, cycle_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_maker() as session:
            cycle = await session.get(CycleModel, cycle_id)
            return self._cycle_to_dict(cycle) if cycle is not None else None

    async def list_cycles(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent cycles first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(CycleModel).order_by(CycleModel.start_time.desc()).limit(limit)
            )
            return [self._cycle_to_dict(c) for c in result.scalars().all()]

    # Trade operations
    async def save_trade(self, trade: TradeRecord, cycle_id: Optional[str] = None):
        async with self.session_maker() as session:
            session.add(TradeModel(
                id=trade.id,
                cycle_id=cycle_id,
                pair=trade.pair,
                entry_price=trade.entry_price,
                exit_price=trade.exit_price,
                entry_time=trade.entry_time,
                exit_time=trade.exit_time,
                invested_amount=trade.invested_amount,
                token_amount=trade.token_amount,
                realized_pnl=trade.realized_pnl,
                realized_pnl_pct=trade.realized_pnl_percent,
                is_partial=trade.is_partial,
                strategy_name=trade.strategy_name,
                close_reason=trade.close_reason,
            ))
            await session.commit()

    async def get_trades(
        self,
        cycle_id: Optional[str] = None,
        pair: Optional[str] = None,
        limit: int = 1000,
    ) -> List[TradeRecord]:
        """Trades in exit order, with optional filters."""
        async with self.session_maker() as session:
            query = select(TradeModel).order_by(TradeModel.exit_time.asc()).limit(limit)

            if cycle_id:
                query = query.where(TradeModel.cycle_id == cycle_id)
            if pair:
                query = query.where(TradeModel.pair == pair)

            result = await session.execute(query)
            return [self._trade_from_model(t) for t in result.scalars().all()]

    # Event operations
    async def save_events(self, events: List[Event], cycle_id: Optional[str] = None):
        if not events:
            return
        async with self.session_maker() as session:
            session.add_all([
                EventModel(
                    cycle_id=cycle_id,
                    event_type=event.event_type.value,
                    timestamp=event.timestamp,
                    data_json=event.model_dump(mode="json")["data"],
                )
                for event in events
            ])
            await session.commit()

    async def get_events(
        self,
        event_type: Optional[str] = None,
        cycle_id: Optional[str] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        async with self.session_maker() as session:
            query = select(EventModel).order_by(EventModel.id.asc()).limit(limit)

            if event_type:
                query = query.where(EventModel.event_type == event_type)
            if cycle_id:
                query = query.where(EventModel.cycle_id == cycle_id)

            result = await session.execute(query)
            return [
                {
                    'event_type': e.event_type,
                    'timestamp': e.timestamp,
                    'data': e.data_json or {},
                    'cycle_id': e.cycle_id,
                }
                for e in result.scalars().all()
            ]

    # Helpers
    def _trade_from_model(self, model: TradeModel) -> TradeRecord:
        """Convert DB model to TradeRecord object."""
        return TradeRecord(
            id=model.id,
            pair=model.pair,
            entry_price=model.entry_price,
            exit_price=model.exit_price,
            entry_time=model.entry_time,
            exit_time=model.exit_time,
            invested_amount=model.invested_amount,
            token_amount=model.token_amount,
            realized_pnl=model.realized_pnl,
            realized_pnl_percent=model.realized_pnl_pct,
            is_partial=bool(model.is_partial),
            strategy_name=model.strategy_name,
            close_reason=model.close_reason,
        )

    def _cycle_to_dict(self, model: CycleModel) -> Dict[str, Any]:
        def _str(value):
            return str(value) if value is not None else None

        return {
            'cycle_id': model.cycle_id,
            'start_time': model.start_time,
            'end_time': model.end_time,
            'duration_seconds': model.duration_seconds,
            'network': model.network,
            'strategy': model.strategy,
            'initial_capital': _str(model.initial_capital),
            'final_capital': _str(model.final_capital),
            'pnl': _str(model.pnl),
            'pnl_percent': _str(model.pnl_percent),
            'total_trades': model.total_trades,
            'winning_trades': model.winning_trades,
            'losing_trades': model.losing_trades,
            'win_rate': _str(model.win_rate),
            'max_drawdown': _str(model.max_drawdown),
            'metrics': model.metrics_json or {},
        }


class EventRecorder:
    """Buffers every bus event and writes the buffer to the database on ``flush()``."""

    def __init__(self, database: Database, event_bus: EventBus):
        self.database = database
        self.event_bus = event_bus
        self.cycle_id: Optional[str] = None
        self._buffer: List[Event] = []
        event_bus.subscribe_all(self.record)

    def record(self, event: Event):
        self._buffer.append(event)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def flush(self) -> int:
        """Persist buffered events; returns how many were written."""
        events, self._buffer = self._buffer, []
        try:
            await self.database.save_events(events, cycle_id=self.cycle_id)
        except Exception:
            self._buffer = events + self._buffer
            raise
        return len(events)

    def close(self):
        self.event_bus.unsubscribe_all(self.record)

"""Unit tests for database operations."""
import re

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from sqlalchemy.exc import OperationalError

from src.core.events import EventType
from src.core.models import TradeRecord
from src.storage.database import (
    Database,
    EventRecorder,
    calculate_trade_metrics,
    generate_cycle_id,
)

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_trade(pnl: str, minutes: int = 0, **overrides) -> TradeRecord:
    data = dict(
        pair="WETH/USDC",
        entry_price=Decimal("100"),
        exit_price=Decimal("110"),
        entry_time=START,
        exit_time=START + timedelta(minutes=minutes),
        invested_amount=Decimal("5"),
        token_amount=Decimal("0.05"),
        realized_pnl=Decimal(pnl),
        realized_pnl_percent=Decimal(pnl) / Decimal("5") * 100,
        strategy_name="grid",
        close_reason="stop_loss",
    )
    data.update(overrides)
    return TradeRecord(**data)


# =============================================================================
# Helper Tests
# =============================================================================

class TestHelpers:
    """Test cycle ids and trade metrics."""

    def test_generate_cycle_id(self):
        assert re.fullmatch(r"cycle-2024-01-01-120000-[0-9a-f]{8}", generate_cycle_id(START))

    def test_cycle_ids_in_same_second_differ(self):
        assert generate_cycle_id(START) != generate_cycle_id(START)

    def test_metrics_empty(self):
        metrics = calculate_trade_metrics([])

        assert metrics['profit_factor'] is None
        assert metrics['max_consecutive_wins'] == 0

    def test_metrics(self):
        trades = [make_trade(p) for p in ("1", "2", "-1", "-0.5", "-0.5", "3")]

        metrics = calculate_trade_metrics(trades)

        assert Decimal(metrics['avg_trade_size']) == Decimal("5")
        assert Decimal(metrics['avg_profit']) == Decimal("2")
        assert Decimal(metrics['avg_loss']).quantize(Decimal("0.0001")) == Decimal("0.6667")
        assert Decimal(metrics['profit_factor']) == Decimal("3")
        assert metrics['max_consecutive_wins'] == 2
        assert metrics['max_consecutive_losses'] == 3


# =============================================================================
# Cycle Tests
# =============================================================================

class TestCycles:
    """Test cycle persistence."""

    @pytest.mark.asyncio
    async def test_start_and_get_cycle(self, test_database):
        cycle_id = await test_database.start_cycle(
            Decimal("50"), strategy="auto", network="base", start_time=START
        )

        cycle = await test_database.get_cycle(cycle_id)

        assert cycle_id.startswith("cycle-2024-01-01-120000-")
        assert cycle['cycle_id'] == cycle_id
        assert Decimal(cycle['initial_capital']) == Decimal("50")
        assert cycle['strategy'] == "auto"
        assert cycle['network'] == "base"
        assert cycle['end_time'] is None

    @pytest.mark.asyncio
    async def test_finalize_cycle(self, test_database):
        cycle_id = await test_database.start_cycle(Decimal("50"), start_time=START)
        await test_database.save_trade(make_trade("3", minutes=5), cycle_id=cycle_id)
        await test_database.save_trade(make_trade("-1", minutes=10), cycle_id=cycle_id)

        result = await test_database.finalize_cycle(
            cycle_id,
            final_capital=Decimal("52"),
            max_drawdown=Decimal("-0.02"),
            end_time=START + timedelta(hours=1),
        )

        assert result['duration_seconds'] == 3600
        assert Decimal(result['pnl']) == Decimal("2")
        assert Decimal(result['pnl_percent']) == Decimal("4")
        assert result['total_trades'] == 2
        assert result['winning_trades'] == 1
        assert result['losing_trades'] == 1
        assert Decimal(result['win_rate']) == Decimal("50")
        assert Decimal(result['metrics']['profit_factor']) == Decimal("3")

    @pytest.mark.asyncio
    async def test_finalize_missing_cycle(self, test_database):
        assert await test_database.finalize_cycle("cycle-missing", Decimal("1")) is None

    @pytest.mark.asyncio
    async def test_list_cycles_newest_first(self, test_database):
        await test_database.start_cycle(Decimal("50"), start_time=START)
        await test_database.start_cycle(Decimal("60"), start_time=START + timedelta(days=1))

        cycles = await test_database.list_cycles()

        assert [c['cycle_id'][:23] for c in cycles] == [
            "cycle-2024-01-02-120000",
            "cycle-2024-01-01-120000",
        ]

    @pytest.mark.asyncio
    async def test_cycles_started_in_same_second_are_kept_apart(self, test_database):
        first = await test_database.start_cycle(Decimal("50"), start_time=START)
        second = await test_database.start_cycle(Decimal("60"), start_time=START)

        assert first != second
        assert Decimal((await test_database.get_cycle(first))['initial_capital']) == Decimal("50")
        assert Decimal((await test_database.get_cycle(second))['initial_capital']) == Decimal("60")
        assert len(await test_database.list_cycles()) == 2


# =============================================================================
# Trade Tests
# =============================================================================

class TestTrades:
    """Test trade persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get_trade(self, test_database):
        trade = make_trade("0.5", is_partial=True)

        await test_database.save_trade(trade)
        trades = await test_database.get_trades()

        assert len(trades) == 1
        loaded = trades[0]
        assert loaded.id == trade.id
        assert loaded.realized_pnl == Decimal("0.5")
        assert loaded.realized_pnl_percent == Decimal("10")
        assert loaded.is_partial
        assert loaded.close_reason == "stop_loss"

    @pytest.mark.asyncio
    async def test_trades_filtered_and_ordered(self, test_database):
        cycle_id = await test_database.start_cycle(Decimal("50"), start_time=START)
        await test_database.save_trade(make_trade("1", minutes=20), cycle_id=cycle_id)
        await test_database.save_trade(make_trade("2", minutes=10), cycle_id=cycle_id)
        await test_database.save_trade(make_trade("3", pair="WBTC/USDC"))

        in_cycle = await test_database.get_trades(cycle_id=cycle_id)
        by_pair = await test_database.get_trades(pair="WBTC/USDC")

        assert [t.realized_pnl for t in in_cycle] == [Decimal("2"), Decimal("1")]
        assert len(by_pair) == 1


# =============================================================================
# Event Tests
# =============================================================================

class TestEvents:
    """Test event persistence and the recorder."""

    @pytest.mark.asyncio
    async def test_save_events_serializes_decimals(self, test_database, event_bus):
        event = event_bus.emit(EventType.TRADE_EXECUTED, price=Decimal("101.5"), side="buy")

        await test_database.save_events([event])
        stored = await test_database.get_events()

        assert stored[0]['event_type'] == "trade.executed"
        assert stored[0]['data'] == {'price': "101.5", 'side': "buy"}

    @pytest.mark.asyncio
    async def test_recorder_buffers_and_flushes(self, test_database, event_bus):
        cycle_id = await test_database.start_cycle(Decimal("50"), start_time=START)
        recorder = EventRecorder(test_database, event_bus)
        recorder.cycle_id = cycle_id

        event_bus.emit(EventType.CYCLE_STARTED, cycle=1)
        event_bus.emit(EventType.CYCLE_ENDED, cycle=1)
        assert recorder.pending == 2

        assert await recorder.flush() == 2
        assert recorder.pending == 0

        stored = await test_database.get_events(cycle_id=cycle_id)
        assert [e['event_type'] for e in stored] == ["cycle.started", "cycle.ended"]

        filtered = await test_database.get_events(event_type="cycle.ended")
        assert len(filtered) == 1

    @pytest.mark.asyncio
    async def test_recorder_close_unsubscribes(self, test_database, event_bus):
        recorder = EventRecorder(test_database, event_bus)

        recorder.close()
        event_bus.emit(EventType.BOT_STARTED)

        assert recorder.pending == 0

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_buffer(self, event_bus):
        db = Database("sqlite+aiosqlite:///:memory:")
        recorder = EventRecorder(db, event_bus)
        event_bus.emit(EventType.BOT_STARTED)

        # Tables were never created
        with pytest.raises(OperationalError):
            await recorder.flush()

        assert recorder.pending == 1
        await db.close()

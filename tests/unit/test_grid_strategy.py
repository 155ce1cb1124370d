"""Unit tests for the grid trading strategy."""
import pytest
from decimal import Decimal
from pydantic import ValidationError

from src.core.events import EventType
from src.core.models import GridLevelAction, SignalAction, TradeRecord
from src.strategies.grid_strategy import GridStrategy


@pytest.fixture
def grid(grid_config, analysis_config, event_bus, clock):
    """Create an active grid strategy."""
    strategy = GridStrategy(grid_config, analysis_config, event_bus=event_bus, clock=clock)
    strategy.activate()
    return strategy


# =============================================================================
# Grid Level Tests
# =============================================================================

class TestGridLevels:
    """Test grid level calculation."""

    def test_levels_span_range_evenly(self, grid):
        levels = grid.calculate_grid_levels(Decimal("100"))

        assert [level.price for level in levels] == [
            Decimal("95"), Decimal("97.5"), Decimal("100"), Decimal("102.5"), Decimal("105")
        ]

    def test_level_actions(self, grid):
        levels = grid.calculate_grid_levels(Decimal("100"))

        assert [level.action for level in levels] == [
            GridLevelAction.BUY,
            GridLevelAction.BUY,
            GridLevelAction.NEUTRAL,
            GridLevelAction.SELL,
            GridLevelAction.SELL,
        ]
        assert all(level.amount_percent == Decimal("0.02") for level in levels)
        assert not any(level.is_triggered for level in levels)

    def test_find_closest_level(self, grid):
        grid.initialize(Decimal("100"))

        assert grid.find_closest_level(Decimal("98")).price == Decimal("97.5")
        assert grid.find_closest_level(Decimal("104.9")).level_index == 4

    def test_find_closest_level_without_grid(self, grid):
        assert grid.find_closest_level(Decimal("100")) is None


# =============================================================================
# Signal Tests
# =============================================================================

class TestGridSignals:
    """Test grid signal generation."""

    @pytest.mark.asyncio
    async def test_first_snapshot_initializes_grid(self, grid, make_market_data):
        signal = await grid.analyze(make_market_data(price="100"))

        assert signal is None
        assert grid.base_price == Decimal("100")
        assert len(grid.grid_levels) == 5

    @pytest.mark.asyncio
    async def test_buy_signal_near_buy_level(self, grid, make_market_data):
        await grid.analyze(make_market_data(price="100"))

        signal = await grid.analyze(make_market_data(price="97.6"))

        assert signal.action == SignalAction.BUY
        assert signal.strategy_name == "grid"
        assert signal.confidence == 0.8
        assert signal.metadata['level_index'] == 1
        assert signal.metadata['base_price'] == "100"
        assert grid.signals_generated == 1

    @pytest.mark.asyncio
    async def test_level_triggers_once(self, grid, make_market_data):
        await grid.analyze(make_market_data(price="100"))
        await grid.analyze(make_market_data(price="97.5"))

        assert await grid.analyze(make_market_data(price="97.5")) is None
        assert await grid.analyze(make_market_data(price="96.5")) is None

    @pytest.mark.asyncio
    async def test_sell_signal_near_sell_level(self, grid, make_market_data):
        await grid.analyze(make_market_data(price="100"))

        signal = await grid.analyze(make_market_data(price="102.4"))

        assert signal.action == SignalAction.SELL

    @pytest.mark.asyncio
    async def test_neutral_level_never_signals(self, grid, make_market_data):
        await grid.analyze(make_market_data(price="100"))

        assert await grid.analyze(make_market_data(price="100.1")) is None

    @pytest.mark.asyncio
    async def test_no_signal_between_levels(self, grid, make_market_data):
        await grid.analyze(make_market_data(price="100"))

        assert await grid.analyze(make_market_data(price="98.8")) is None

    @pytest.mark.asyncio
    async def test_inactive_strategy_returns_none(self, grid, make_market_data):
        grid.deactivate()

        assert await grid.analyze(make_market_data(price="100")) is None
        assert grid.base_price is None

    @pytest.mark.asyncio
    async def test_incomplete_data_returns_none(self, grid, make_market_data):
        assert await grid.analyze(make_market_data(liquidity=None)) is None


# =============================================================================
# Rebalance Tests
# =============================================================================

class TestGridRebalance:
    """Test grid recentering."""

    def test_rebalance_requires_interval(self, grid, clock):
        grid.initialize(Decimal("100"))

        clock.advance(299)
        assert not grid.should_rebalance()

        clock.advance(1)
        assert grid.should_rebalance()

    def test_rebalance_requires_large_move(self, grid):
        grid.initialize(Decimal("100"))

        assert not grid.rebalance(Decimal("105"))
        assert grid.base_price == Decimal("100")

        assert grid.rebalance(Decimal("106"))
        assert grid.base_price == Decimal("106")
        assert grid.grid_levels[2].price == Decimal("106")

    @pytest.mark.asyncio
    async def test_analyze_rebalances_after_interval(self, grid, make_market_data, clock):
        await grid.analyze(make_market_data(price="100"))
        clock.advance(300)

        signal = await grid.analyze(make_market_data(price="110"))

        assert grid.base_price == Decimal("110")
        assert signal is None
        assert grid.last_rebalance == clock()

    def test_grid_state(self, grid):
        grid.initialize(Decimal("100"))

        state = grid.get_grid_state()

        assert state['base_price'] == "100"
        assert state['levels'][0] == {
            'index': 0, 'price': "95.00", 'action': "buy", 'triggered': False
        }


# =============================================================================
# Market Condition Tests
# =============================================================================

class TestGridCanTrade:
    """Test market condition gating."""

    def test_can_trade_in_calm_liquid_market(self, grid, make_market_data):
        assert grid.can_trade(make_market_data(volatility="0.05"))

    def test_rejects_high_volatility(self, grid, make_market_data):
        assert not grid.can_trade(make_market_data(volatility="0.2"))

    def test_rejects_low_liquidity(self, grid, make_market_data):
        assert not grid.can_trade(make_market_data(liquidity="50000"))

    def test_rejects_incomplete_data(self, grid, make_market_data):
        assert not grid.can_trade(make_market_data(price=None))


# =============================================================================
# Base Strategy Behaviour
# =============================================================================

class TestStrategyBase:
    """Test behaviour shared by all strategies."""

    def test_activation_publishes_selection(self, grid, event_bus):
        event = event_bus.get_history(EventType.STRATEGY_SELECTED)[0]

        assert grid.is_active
        assert event.data['strategy'] == "grid"
        assert event.data['config']['grid_levels'] == 5

    def test_record_trade_updates_metrics(self, grid, clock):
        for pnl in ("1", "-0.5"):
            grid.on_position_closed(TradeRecord(
                pair="WETH/USDC",
                entry_price=Decimal("100"),
                exit_price=Decimal("101"),
                entry_time=clock(),
                invested_amount=Decimal("5"),
                token_amount=Decimal("0.05"),
                realized_pnl=Decimal(pnl),
            ))

        metrics = grid.get_metrics()
        assert metrics['trades_executed'] == 2
        assert metrics['success_rate'] == 50.0
        assert grid.calculate_average_pnl() == Decimal("0.25")

    def test_update_config_is_validated(self, grid):
        grid.update_config(grid_levels=7)
        assert grid.config.grid_levels == 7

        with pytest.raises(ValidationError):
            grid.update_config(grid_levels=1)

    def test_price_change_helper(self, grid):
        assert grid.calculate_price_change(Decimal("110"), Decimal("100")) == Decimal("10")
        assert grid.calculate_price_change(Decimal("110"), None) == Decimal("0")

    def test_reset(self, grid):
        grid.initialize(Decimal("100"))

        grid.reset()

        assert grid.base_price is None
        assert grid.grid_levels == []
        assert grid.signals_generated == 0

"""Unit tests for exit management (trailing stop and take-profit levels)."""
import pytest
from decimal import Decimal

from src.core.config import RiskConfig
from src.core.events import EventType
from src.core.models import ExitReason, TakeProfitLevelConfig
from src.risk.exit_manager import ExitManager, TakeProfitLevels, TrailingStopLoss

PAIR = "WETH/USDC"


@pytest.fixture
def exit_manager(risk_config, event_bus, clock):
    """Create an exit manager with a 3% trailing stop and 10/20/30% take-profit."""
    return ExitManager(risk_config, event_bus=event_bus, clock=clock)


@pytest.fixture
def default_levels():
    return [
        TakeProfitLevelConfig(percent=Decimal("0.10"), amount=Decimal("0.25")),
        TakeProfitLevelConfig(percent=Decimal("0.20"), amount=Decimal("0.50")),
        TakeProfitLevelConfig(percent=Decimal("0.30"), amount=Decimal("0.25")),
    ]


# =============================================================================
# Trailing Stop Tests
# =============================================================================

class TestTrailingStopLoss:
    """Test the trailing stop-loss."""

    def test_initial_stop_price(self):
        stop = TrailingStopLoss(Decimal("100"), Decimal("0.03"))

        assert stop.stop_price == Decimal("97")
        assert stop.highest_price == Decimal("100")

    def test_stop_trails_new_high_and_triggers(self):
        stop = TrailingStopLoss(Decimal("100"), Decimal("0.03"))

        assert not stop.update(Decimal("110"))
        assert stop.stop_price == Decimal("106.7")

        assert stop.update(Decimal("106"))
        assert stop.is_triggered

    def test_stop_never_decreases(self):
        stop = TrailingStopLoss(Decimal("100"), Decimal("0.03"))
        stop.update(Decimal("110"))

        stop.update(Decimal("108"))

        assert stop.stop_price == Decimal("106.7")
        assert stop.highest_price == Decimal("110")

    def test_trigger_fires_once(self):
        stop = TrailingStopLoss(Decimal("100"), Decimal("0.03"))

        assert stop.update(Decimal("96"))
        assert not stop.update(Decimal("95"))
        assert stop.is_triggered

    def test_triggers_at_stop_price(self):
        stop = TrailingStopLoss(Decimal("100"), Decimal("0.03"))

        assert stop.update(Decimal("97"))


# =============================================================================
# Take-Profit Tests
# =============================================================================

class TestTakeProfitLevels:
    """Test tiered take-profit levels."""

    def test_target_prices(self, default_levels):
        levels = TakeProfitLevels(Decimal("100"), default_levels)

        assert [l.target_price for l in levels.levels] == [
            Decimal("110"), Decimal("120"), Decimal("130")
        ]
        assert levels.get_next_level().level_index == 1

    def test_levels_trigger_in_order(self, default_levels):
        levels = TakeProfitLevels(Decimal("100"), default_levels)

        first = levels.check_levels(Decimal("111"))
        repeat = levels.check_levels(Decimal("112"))

        assert [l.level_index for l in first] == [1]
        assert repeat == []
        assert levels.get_next_level().level_index == 2
        assert not levels.all_levels_executed()

    def test_price_jump_triggers_all_levels(self, default_levels):
        levels = TakeProfitLevels(Decimal("100"), default_levels)

        triggered = levels.check_levels(Decimal("135"))

        assert [l.level_index for l in triggered] == [1, 2, 3]
        assert levels.all_levels_executed()
        assert levels.get_next_level() is None

    def test_unsorted_config_is_sorted(self, default_levels):
        levels = TakeProfitLevels(Decimal("100"), list(reversed(default_levels)))

        assert [l.percent for l in levels.levels] == [
            Decimal("0.10"), Decimal("0.20"), Decimal("0.30")
        ]

    def test_state(self, default_levels):
        levels = TakeProfitLevels(Decimal("100"), default_levels)
        levels.check_levels(Decimal("110"))

        state = levels.get_state()

        assert state['executed_count'] == 1
        assert state['levels'][0]['percent'] == "+10%"
        assert state['levels'][1]['amount_to_sell'] == "50%"


# =============================================================================
# Exit Manager Tests
# =============================================================================

class TestExitManager:
    """Test the per-pair exit state machine."""

    def test_start_managing(self, exit_manager):
        assert exit_manager.start_managing(PAIR, Decimal("100"))
        assert exit_manager.is_managing(PAIR)

    def test_start_managing_twice_rejected(self, exit_manager):
        exit_manager.start_managing(PAIR, Decimal("100"))

        assert not exit_manager.start_managing(PAIR, Decimal("90"))
        assert exit_manager.active_exits[PAIR].entry_price == Decimal("100")

    def test_update_unmanaged_pair_holds(self, exit_manager):
        decision = exit_manager.update(PAIR, Decimal("50"))

        assert not decision.should_exit
        assert decision.partial_exit is None

    def test_hold_within_range(self, exit_manager):
        exit_manager.start_managing(PAIR, Decimal("100"))

        decision = exit_manager.update(PAIR, Decimal("102"))

        assert not decision.should_exit
        assert not decision.is_partial

    def test_stop_loss_decision(self, exit_manager, event_bus):
        exit_manager.start_managing(PAIR, Decimal("100"))
        exit_manager.update(PAIR, Decimal("109"))

        decision = exit_manager.update(PAIR, Decimal("105"))

        assert decision.should_exit
        assert decision.reason == ExitReason.STOP_LOSS
        assert decision.pnl_percent == Decimal("5")

        events = event_bus.get_history(EventType.STOP_LOSS_TRIGGERED)
        assert len(events) == 1
        assert events[0].data['pair'] == PAIR

    def test_trailing_example_from_110_to_106(self, exit_manager):
        exit_manager.start_managing(PAIR, Decimal("100"))
        exit_manager.update(PAIR, Decimal("110"))

        decision = exit_manager.update(PAIR, Decimal("106"))

        assert decision.should_exit
        assert decision.pnl_percent == Decimal("6")

    def test_stop_loss_checked_before_take_profit(self, exit_manager, event_bus):
        exit_manager.start_managing(PAIR, Decimal("100"))
        exit_manager.update(PAIR, Decimal("125"))

        # 110 is below the trailing stop (121.25) and above the first target
        decision = exit_manager.update(PAIR, Decimal("110"))

        assert decision.reason == ExitReason.STOP_LOSS

    def test_partial_take_profit(self, exit_manager, event_bus):
        exit_manager.start_managing(PAIR, Decimal("100"))

        decision = exit_manager.update(PAIR, Decimal("110"))

        assert decision.is_partial
        assert len(decision.partial_exit) == 1
        assert decision.partial_exit[0].level_index == 1
        assert decision.partial_exit[0].amount_percent == Decimal("0.25")
        assert exit_manager.is_managing(PAIR)
        assert len(event_bus.get_history(EventType.TAKE_PROFIT_TRIGGERED)) == 1

    def test_all_levels_at_once_is_full_exit(self, exit_manager, event_bus):
        exit_manager.start_managing(PAIR, Decimal("100"))

        decision = exit_manager.update(PAIR, Decimal("135"))

        assert decision.should_exit
        assert decision.reason == ExitReason.ALL_TAKE_PROFIT_LEVELS
        assert len(event_bus.get_history(EventType.TAKE_PROFIT_TRIGGERED)) == 3

    def test_no_pending_exit_while_holding(self, exit_manager):
        exit_manager.start_managing(PAIR, Decimal("100"))
        exit_manager.update(PAIR, Decimal("110"))

        assert exit_manager.pending_exit_reason(PAIR) is None
        assert exit_manager.pending_exit_reason("UNKNOWN/USDC") is None

    def test_latched_stop_loss_is_pending_until_stopped(self, exit_manager):
        exit_manager.start_managing(PAIR, Decimal("100"))
        exit_manager.update(PAIR, Decimal("96"))

        # The trigger latched, so a lower price is not reported as a new decision
        assert not exit_manager.update(PAIR, Decimal("95")).should_exit
        assert exit_manager.pending_exit_reason(PAIR) == ExitReason.STOP_LOSS

        exit_manager.stop_managing(PAIR)
        assert exit_manager.pending_exit_reason(PAIR) is None

    def test_executed_take_profit_levels_are_pending(self, exit_manager):
        exit_manager.start_managing(PAIR, Decimal("100"))
        exit_manager.update(PAIR, Decimal("135"))

        assert exit_manager.pending_exit_reason(PAIR) == ExitReason.ALL_TAKE_PROFIT_LEVELS

    def test_stop_managing_is_idempotent(self, exit_manager):
        exit_manager.start_managing(PAIR, Decimal("100"))

        exit_manager.stop_managing(PAIR)
        exit_manager.stop_managing(PAIR)

        assert not exit_manager.is_managing(PAIR)

    def test_restart_after_exit_gets_fresh_state(self, exit_manager):
        exit_manager.start_managing(PAIR, Decimal("100"))
        exit_manager.update(PAIR, Decimal("110"))
        exit_manager.stop_managing(PAIR)

        exit_manager.start_managing(PAIR, Decimal("100"))
        state = exit_manager.get_exit_state(PAIR)

        assert state['stop_loss']['highest_price'] == "100"
        assert state['take_profit']['executed_count'] == 0

    def test_trailing_percent_applies_to_new_positions(self, exit_manager):
        exit_manager.set_trailing_percent(Decimal("0.02"))
        exit_manager.start_managing(PAIR, Decimal("100"))

        assert exit_manager.active_exits[PAIR].stop_loss.stop_price == Decimal("98")

    def test_exit_state_for_missing_pair(self, exit_manager):
        assert exit_manager.get_exit_state(PAIR) is None

    def test_elapsed_time(self, exit_manager, clock):
        exit_manager.start_managing(PAIR, Decimal("100"))
        clock.advance(90)

        assert exit_manager.get_exit_state(PAIR)['elapsed_seconds'] == 90
        assert len(exit_manager.get_all_active_exits()) == 1

    def test_reset(self, exit_manager):
        exit_manager.set_trailing_percent(Decimal("0.02"))
        exit_manager.start_managing(PAIR, Decimal("100"))

        exit_manager.reset()

        assert exit_manager.active_exits == {}
        assert exit_manager.trailing_percent == RiskConfig().stop_loss_trailing

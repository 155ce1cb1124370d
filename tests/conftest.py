"""Pytest fixtures and utilities for the DEX Bot Trader test suite."""
import logging

import pytest
import pytest_asyncio
import structlog
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from src.core.config import (
    AnalysisConfig,
    BotConfig,
    GridConfig,
    MomentumConfig,
    RiskConfig,
    StrategySelectionConfig,
)
from src.core.events import EventBus
from src.core.models import MarketData, Position, TradingSignal, SignalAction
from src.storage.database import Database


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Manually advanced clock for time-dependent components."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock():
    """Create a fake clock fixed at 2024-01-01 12:00 UTC."""
    return FakeClock()


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def bot_config():
    """Create a test bot configuration with $50 capital and 10% max position."""
    return BotConfig(
        trading_mode="paper",
        initial_capital=50.0,
        max_position_percent=0.10,
        polling_interval=15.0,
        retry_attempts=2,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def risk_config():
    """Create a test risk configuration matching the defaults."""
    return RiskConfig(
        stop_loss_trailing_percent=0.03,
        take_profit_level_1=0.10,
        take_profit_level_2=0.20,
        take_profit_level_3=0.30,
        take_profit_amount_1=0.25,
        take_profit_amount_2=0.50,
        take_profit_amount_3=0.25,
        drawdown_level_1=0.05,
        drawdown_level_1_duration=1800,
        drawdown_level_2=0.10,
        drawdown_level_2_duration=7200,
        max_drawdown_percent=0.15,
    )


@pytest.fixture
def grid_config():
    """Create a test grid configuration (5 levels, +/-5%)."""
    return GridConfig(
        grid_levels=5,
        grid_range_min=-0.05,
        grid_range_max=0.05,
        grid_amount_per_level=0.02,
        grid_rebalance_interval=300,
    )


@pytest.fixture
def momentum_config():
    """Create a test momentum configuration with a short lookback."""
    return MomentumConfig(
        momentum_entry_threshold=0.05,
        momentum_exit_threshold=0.03,
        momentum_volume_multiplier=2.0,
        momentum_lookback_period=5,
        momentum_rsi_period=3,
        momentum_rsi_entry=30.0,
        momentum_rsi_exit=70.0,
    )


@pytest.fixture
def analysis_config():
    """Create a test analysis configuration."""
    return AnalysisConfig(min_liquidity_usd=75000.0, min_volume_24h_usd=25000.0)


@pytest.fixture
def selection_config():
    """Create a strategy selection configuration in auto mode."""
    return StrategySelectionConfig(default_strategy="auto", strategy_switch_cooldown=300)


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def event_bus():
    """Create a fresh event bus."""
    return EventBus()


@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def restore_logging():
    """Remove handlers added by a test and restore structlog defaults."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    structlog.reset_defaults()


# =============================================================================
# Data Fixtures
# =============================================================================

@pytest.fixture
def make_market_data(clock):
    """Factory for market snapshots with healthy liquidity and volume."""

    def _make(
        price="100",
        volume="50000",
        liquidity="100000",
        volatility="0.05",
        avg_volume=None,
        price_history: Optional[List] = None,
        pair="WETH/USDC",
        **overrides,
    ) -> MarketData:
        data = dict(
            pair=pair,
            price=Decimal(str(price)) if price is not None else None,
            volume=Decimal(str(volume)) if volume is not None else None,
            liquidity=Decimal(str(liquidity)) if liquidity is not None else None,
            timestamp=clock(),
            volatility=Decimal(str(volatility)) if volatility is not None else None,
            avg_volume=Decimal(str(avg_volume)) if avg_volume is not None else None,
            price_history=[Decimal(str(p)) for p in (price_history or [])],
        )
        data.update(overrides)
        return MarketData(**data)

    return _make


@pytest.fixture
def sample_market_data(make_market_data):
    """Create a complete market snapshot at price 100."""
    return make_market_data()


@pytest.fixture
def sample_position(clock):
    """Create a sample position: $5 at 100."""
    return Position(
        pair="WETH/USDC",
        entry_price=Decimal("100"),
        invested_amount=Decimal("5"),
        token_amount=Decimal("0.05"),
        entry_time=clock(),
        strategy_name="grid",
    )


@pytest.fixture
def sample_buy_signal(clock):
    """Create a sample buy signal."""
    return TradingSignal(
        action=SignalAction.BUY,
        confidence=0.8,
        reason="Grid buy level 1",
        price=Decimal("97.5"),
        strategy_name="grid",
        pair="WETH/USDC",
        timestamp=clock(),
    )


@pytest.fixture
def sample_sell_signal(clock):
    """Create a sample sell signal."""
    return TradingSignal(
        action=SignalAction.SELL,
        confidence=0.85,
        reason="RSI overbought",
        price=Decimal("110"),
        strategy_name="momentum",
        pair="WETH/USDC",
        timestamp=clock(),
    )

"""Data models for the DEX Bot Trader decision engine.

This module defines the data structures shared by the risk managers, the
strategies and the trading engine:
- Market snapshots consumed each cycle
- Trading signals produced by strategies
- Open positions and closed trade records
- Exit decisions produced by the exit manager
- Take-profit and drawdown level definitions

All monetary values use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class SignalAction(str, Enum):
    """Direction of a strategy signal."""
    BUY = "buy"
    SELL = "sell"


class GridLevelAction(str, Enum):
    """Role of a grid level relative to the grid base price."""
    BUY = "buy"
    SELL = "sell"
    NEUTRAL = "neutral"


class ExitReason(str, Enum):
    """Why the exit manager asked for a full exit."""
    STOP_LOSS = "stop_loss"
    ALL_TAKE_PROFIT_LEVELS = "all_take_profit_levels"


class DrawdownAction(str, Enum):
    """Action executed when a drawdown level fires."""
    PAUSE = "pause"
    PAUSE_AND_RESET = "pause_and_reset"
    STOP = "stop"


class TrendDirection(str, Enum):
    """Market trend classification used for strategy selection."""
    UPTREND = "uptrend"
    DOWNTREND = "downtrend"
    SIDEWAYS = "sideways"
    INSUFFICIENT_DATA = "insufficient_data"


class StrategyMode(str, Enum):
    """Strategy selection mode."""
    AUTO = "auto"
    GRID = "grid"
    MOMENTUM = "momentum"


# =============================================================================
# Market Data Models
# =============================================================================

class MarketData(BaseModel):
    """Per-cycle market snapshot for a single trading pair.

    Required fields are nullable. An incomplete snapshot still builds, and
    strategies reject it through ``missing_fields()``.

    Attributes:
        pair: Trading pair identifier (e.g., "WETH/USDC")
        price: Current price (> 0)
        volume: 24h volume in USD (>= 0)
        liquidity: Pool liquidity in USD (>= 0)
        timestamp: Snapshot time (ISO-8601 strings are accepted)
        volatility: Optional volatility ratio (>= 0)
        avg_volume: Optional rolling average volume
        price_history: Optional recent prices, oldest first
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    REQUIRED_FIELDS: ClassVar[Tuple[str, ...]] = ("price", "volume", "liquidity", "timestamp")

    pair: Optional[str] = Field(default=None, description="Trading pair")
    price: Optional[Decimal] = Field(default=None, description="Current price")
    volume: Optional[Decimal] = Field(default=None, description="Trading volume")
    liquidity: Optional[Decimal] = Field(default=None, description="Pool liquidity")
    timestamp: Optional[datetime] = Field(default=None, description="Snapshot time (UTC)")
    volatility: Optional[Decimal] = Field(default=None, description="Volatility ratio")
    avg_volume: Optional[Decimal] = Field(default=None, description="Average volume")
    price_history: List[Decimal] = Field(default_factory=list, description="Recent prices")

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        """Validate price is > 0 when present."""
        if v is not None and v <= 0:
            raise ValueError("Price must be > 0")
        return v

    @field_validator("volume", "liquidity", "volatility", "avg_volume")
    @classmethod
    def non_negative(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        """Validate volume-like fields are >= 0 when present."""
        if v is not None and v < 0:
            raise ValueError("Value must be >= 0")
        return v

    def missing_fields(self) -> List[str]:
        """Names of required fields that are absent from this snapshot."""
        return [name for name in self.REQUIRED_FIELDS if getattr(self, name) is None]

    @property
    def is_complete(self) -> bool:
        """True if all required fields are present."""
        return not self.missing_fields()


# =============================================================================
# Signal Models
# =============================================================================

class TradingSignal(BaseModel):
    """Trading intent produced by a strategy's ``analyze``.

    Attributes:
        action: Buy or sell
        confidence: Signal confidence 0.0-1.0
        reason: Human-readable explanation
        price: Market price the signal was generated at
        strategy_name: Strategy that generated the signal
        pair: Trading pair, if known
        timestamp: Signal generation time
        metadata: Strategy-specific fields (grid level, RSI, ...)
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    action: SignalAction = Field(..., description="Signal direction")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0, description="Confidence 0-1")
    reason: str = Field(default="", description="Why the signal fired")
    price: Decimal = Field(..., gt=0, description="Price at signal time")
    strategy_name: str = Field(..., description="Strategy name")
    pair: Optional[str] = Field(default=None, description="Trading pair")
    timestamp: datetime = Field(default_factory=utc_now, description="Signal time")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Signal data")

    @property
    def is_buy(self) -> bool:
        return self.action == SignalAction.BUY

    @property
    def is_sell(self) -> bool:
        return self.action == SignalAction.SELL


# =============================================================================
# Position Models
# =============================================================================

class PositionSize(BaseModel):
    """Result of position sizing.

    Attributes:
        amount_usd: Capital to commit in USD
        amount_token: Token quantity at the sizing price
        percent: amount_usd as a percentage of current capital
    """
    amount_usd: Decimal = Field(..., ge=0, description="Size in USD")
    amount_token: Decimal = Field(..., ge=0, description="Size in tokens")
    percent: Decimal = Field(..., ge=0, description="% of current capital")


class Position(BaseModel):
    """Open position for a trading pair (at most one per pair).

    Attributes:
        pair: Trading pair (unique key)
        entry_price: Entry execution price
        entry_time: Entry timestamp
        invested_amount: Remaining cost basis in USD
        token_amount: Remaining token quantity
        initial_token_amount: Token quantity at entry (partial exits are
            fractions of this amount)
        current_price: Last known price
        unrealized_pnl: token_amount * current_price - invested_amount
        unrealized_pnl_percent: unrealized_pnl / invested_amount * 100
        strategy_name: Strategy that opened the position
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    pair: str = Field(..., description="Trading pair")
    entry_price: Decimal = Field(..., gt=0, description="Entry price")
    invested_amount: Decimal = Field(..., ge=0, description="Invested USD")
    token_amount: Decimal = Field(..., ge=0, description="Token quantity")

    id: str = Field(default_factory=lambda: str(uuid4()), description="Position ID")
    entry_time: datetime = Field(default_factory=utc_now, description="Entry time")
    initial_token_amount: Optional[Decimal] = Field(default=None, description="Tokens at entry")
    current_price: Optional[Decimal] = Field(default=None, description="Last price")
    unrealized_pnl: Decimal = Field(default=Decimal("0"), description="Unrealized PnL")
    unrealized_pnl_percent: Decimal = Field(default=Decimal("0"), description="Unrealized PnL %")
    strategy_name: Optional[str] = Field(default=None, description="Opening strategy")

    def model_post_init(self, __context: Any) -> None:
        if self.initial_token_amount is None:
            self.initial_token_amount = self.token_amount
        if self.current_price is None:
            self.current_price = self.entry_price

    @property
    def current_value(self) -> Decimal:
        """Position value at the last known price."""
        return self.token_amount * (self.current_price or self.entry_price)

    def mark_to_market(self, current_price: Decimal) -> None:
        """Recompute unrealized PnL at the given price."""
        self.current_price = current_price
        self.unrealized_pnl = self.token_amount * current_price - self.invested_amount
        if self.invested_amount > 0:
            self.unrealized_pnl_percent = self.unrealized_pnl / self.invested_amount * 100
        else:
            self.unrealized_pnl_percent = Decimal("0")


class TradeRecord(BaseModel):
    """Closed (or partially closed) trade produced by the position manager.

    Attributes:
        pair: Trading pair
        entry_price: Entry execution price
        exit_price: Exit execution price
        entry_time: Entry timestamp
        exit_time: Exit timestamp
        invested_amount: Cost basis of the closed quantity
        token_amount: Quantity closed
        realized_pnl: Exit value minus cost basis
        realized_pnl_percent: realized_pnl / invested_amount * 100
        is_partial: True for take-profit partial exits
        close_reason: Why the trade closed
        strategy_name: Strategy that opened the position
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    pair: str = Field(..., description="Trading pair")
    entry_price: Decimal = Field(..., gt=0, description="Entry price")
    exit_price: Decimal = Field(..., gt=0, description="Exit price")
    entry_time: datetime = Field(..., description="Entry time")
    exit_time: datetime = Field(default_factory=utc_now, description="Exit time")
    invested_amount: Decimal = Field(..., ge=0, description="Closed cost basis")
    token_amount: Decimal = Field(..., ge=0, description="Closed quantity")
    realized_pnl: Decimal = Field(default=Decimal("0"), description="Realized PnL")
    realized_pnl_percent: Decimal = Field(default=Decimal("0"), description="Realized PnL %")

    id: str = Field(default_factory=lambda: str(uuid4()), description="Trade ID")
    is_partial: bool = Field(default=False, description="Partial exit")
    close_reason: Optional[str] = Field(default=None, description="Close reason")
    strategy_name: Optional[str] = Field(default=None, description="Strategy name")

    @property
    def duration(self) -> float:
        """Trade duration in seconds."""
        return (self.exit_time - self.entry_time).total_seconds()

    @property
    def is_profitable(self) -> bool:
        return self.realized_pnl > 0


# =============================================================================
# Exit Management Models
# =============================================================================

class TakeProfitLevelConfig(BaseModel):
    """Configured take-profit level: gain threshold and fraction to sell."""
    percent: Decimal = Field(..., gt=0, description="Gain threshold (0.10 = +10%)")
    amount: Decimal = Field(..., gt=0, le=1, description="Fraction of position to sell")


class PartialExit(BaseModel):
    """One take-profit level that fired without closing the whole position."""
    level_index: int = Field(..., ge=1, description="1-based level index")
    amount_percent: Decimal = Field(..., description="Fraction of original position to sell")
    target_price: Decimal = Field(..., description="Level target price")
    current_price: Decimal = Field(..., description="Price that triggered the level")


class ExitDecision(BaseModel):
    """Outcome of ``ExitManager.update`` for one price tick."""
    should_exit: bool = Field(default=False, description="Close the full position")
    reason: Optional[ExitReason] = Field(default=None, description="Full exit reason")
    exit_price: Optional[Decimal] = Field(default=None, description="Exit price")
    pnl_percent: Optional[Decimal] = Field(default=None, description="PnL % at exit")
    partial_exit: Optional[List[PartialExit]] = Field(default=None, description="Partial exits")

    @classmethod
    def hold(cls) -> "ExitDecision":
        """Decision that changes nothing."""
        return cls(should_exit=False, reason=None, partial_exit=None)

    @property
    def is_partial(self) -> bool:
        return not self.should_exit and bool(self.partial_exit)


# =============================================================================
# Drawdown Models
# =============================================================================

class DrawdownLevel(BaseModel):
    """Circuit breaker level.

    Attributes:
        percent: Drawdown threshold as a negative ratio (-0.05 = -5%)
        action: What to do when the level fires
        duration: Pause length in seconds (None for stop)
        message: Operator-facing description
    """
    percent: Decimal = Field(..., lt=0, description="Negative drawdown threshold")
    action: DrawdownAction = Field(..., description="Level action")
    duration: Optional[int] = Field(default=None, ge=0, description="Pause seconds")
    message: str = Field(default="", description="Description")

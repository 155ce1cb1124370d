"""Configuration management for the DEX Bot Trader decision engine."""

from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.core.models import DrawdownAction, DrawdownLevel, TakeProfitLevelConfig

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )
    app_name: str = Field(default="DEX Bot Trader")
    app_version: str = Field(default="0.2.0")


# =============================================================================
# Bot Configuration
# =============================================================================


class BotConfig(BaseSettings):
    """Trading loop and capital configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Mode: 'paper' fills at market price in-process, 'live' uses an external executor
    trading_mode: Literal["paper", "live"] = Field(default="paper")

    # Seconds between trading cycles
    polling_interval: float = Field(default=15.0)

    initial_capital: float = Field(default=50.0)

    # Fraction of available capital per position (0.10 = 10%)
    max_position_percent: float = Field(default=0.10)

    # External call retries (exponential backoff)
    retry_attempts: int = Field(default=3)
    retry_base_delay: float = Field(default=1.0)
    retry_max_delay: float = Field(default=30.0)

    @field_validator("polling_interval", "initial_capital")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("max_position_percent")
    @classmethod
    def validate_max_position(cls, v):
        """Positions above 20% of capital are too risky."""
        if v <= 0 or v > 0.20:
            raise ValueError("max_position_percent must be between 0 and 0.20")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v):
        if v < 0:
            raise ValueError("retry_attempts must be >= 0")
        return v


# =============================================================================
# Risk Configuration
# =============================================================================


class RiskConfig(BaseSettings):
    """Stop-loss, take-profit, drawdown and gas policy.

    Drawdown thresholds are configured as positive magnitudes (0.05 = 5%) and
    exposed through ``drawdown_levels`` as negative ratios.
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Trailing stop-loss distance below the highest price
    stop_loss_trailing_percent: float = Field(default=0.03)

    # Tiered take-profit: gain thresholds and fractions of the position to sell
    take_profit_level_1: float = Field(default=0.10)
    take_profit_level_2: float = Field(default=0.20)
    take_profit_level_3: float = Field(default=0.30)
    take_profit_amount_1: float = Field(default=0.25)
    take_profit_amount_2: float = Field(default=0.50)
    take_profit_amount_3: float = Field(default=0.25)

    # Drawdown circuit breaker
    drawdown_level_1: float = Field(default=0.05)
    drawdown_level_1_duration: int = Field(default=1800)
    drawdown_level_2: float = Field(default=0.10)
    drawdown_level_2_duration: int = Field(default=7200)
    max_drawdown_percent: float = Field(default=0.15)

    # Conservative mode applied after a pause_and_reset drawdown level
    conservative_position_percent: float = Field(default=0.05)
    conservative_stop_loss_trailing: float = Field(default=0.02)

    # Execution costs
    max_gas_percent: float = Field(default=0.02)
    min_gas_native: float = Field(default=0.001)
    slippage_tolerance: float = Field(default=0.005)
    # Seconds to wait for a swap to confirm before retrying
    order_timeout: float = Field(default=30.0)

    @field_validator(
        "stop_loss_trailing_percent",
        "conservative_stop_loss_trailing",
        "drawdown_level_1",
        "drawdown_level_2",
        "max_drawdown_percent",
        "max_gas_percent",
        "slippage_tolerance",
    )
    @classmethod
    def validate_ratio(cls, v):
        """Validate that ratio is between 0 and 1."""
        if v <= 0 or v >= 1:
            raise ValueError("Ratio must be between 0 and 1")
        return v

    @field_validator("order_timeout")
    @classmethod
    def validate_order_timeout(cls, v):
        if v <= 0:
            raise ValueError("order_timeout must be > 0")
        return v

    @field_validator(
        "take_profit_amount_1",
        "take_profit_amount_2",
        "take_profit_amount_3",
    )
    @classmethod
    def validate_amount(cls, v):
        if v <= 0 or v > 1:
            raise ValueError("Take-profit amount must be between 0 and 1")
        return v

    @field_validator("conservative_position_percent")
    @classmethod
    def validate_conservative_position(cls, v):
        if v <= 0 or v > 0.20:
            raise ValueError("conservative_position_percent must be between 0 and 0.20")
        return v

    @property
    def stop_loss_trailing(self) -> Decimal:
        return Decimal(str(self.stop_loss_trailing_percent))

    @property
    def take_profit_levels(self) -> List[TakeProfitLevelConfig]:
        """Take-profit levels in ascending order of gain."""
        levels = [
            TakeProfitLevelConfig(
                percent=Decimal(str(self.take_profit_level_1)),
                amount=Decimal(str(self.take_profit_amount_1)),
            ),
            TakeProfitLevelConfig(
                percent=Decimal(str(self.take_profit_level_2)),
                amount=Decimal(str(self.take_profit_amount_2)),
            ),
            TakeProfitLevelConfig(
                percent=Decimal(str(self.take_profit_level_3)),
                amount=Decimal(str(self.take_profit_amount_3)),
            ),
        ]
        return sorted(levels, key=lambda level: level.percent)

    @property
    def drawdown_levels(self) -> List[DrawdownLevel]:
        """Circuit breaker levels in ascending order of severity."""
        return [
            DrawdownLevel(
                percent=-Decimal(str(self.drawdown_level_1)),
                action=DrawdownAction.PAUSE,
                duration=self.drawdown_level_1_duration,
                message=f"Drawdown -{self.drawdown_level_1:.0%}: pausing trading",
            ),
            DrawdownLevel(
                percent=-Decimal(str(self.drawdown_level_2)),
                action=DrawdownAction.PAUSE_AND_RESET,
                duration=self.drawdown_level_2_duration,
                message=(
                    f"Drawdown -{self.drawdown_level_2:.0%}: pausing and "
                    "resetting to conservative parameters"
                ),
            ),
            DrawdownLevel(
                percent=-Decimal(str(self.max_drawdown_percent)),
                action=DrawdownAction.STOP,
                duration=None,
                message=(
                    f"Drawdown -{self.max_drawdown_percent:.0%}: bot stopped, "
                    "manual intervention required"
                ),
            ),
        ]


# =============================================================================
# Strategy Configuration
# =============================================================================


class GridConfig(BaseSettings):
    """Grid trading strategy configuration.

    The grid spans ``[base * (1 + grid_range_min), base * (1 + grid_range_max)]``.
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    grid_levels: int = Field(default=5)
    grid_range_min: float = Field(default=-0.05)
    grid_range_max: float = Field(default=0.05)
    grid_amount_per_level: float = Field(default=0.02)
    grid_rebalance_interval: int = Field(default=300)

    @field_validator("grid_levels")
    @classmethod
    def validate_levels(cls, v):
        if v < 2:
            raise ValueError("Grid needs at least 2 levels")
        return v

    @model_validator(mode="after")
    def validate_range(self):
        if self.grid_range_min >= self.grid_range_max:
            raise ValueError("grid_range_min must be below grid_range_max")
        return self


class MomentumConfig(BaseSettings):
    """Momentum strategy configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    momentum_entry_threshold: float = Field(default=0.05)
    momentum_exit_threshold: float = Field(default=0.03)
    momentum_volume_multiplier: float = Field(default=2.0)
    momentum_lookback_period: int = Field(default=20)
    momentum_rsi_period: int = Field(default=14)
    momentum_rsi_entry: float = Field(default=30.0)
    momentum_rsi_exit: float = Field(default=70.0)

    @field_validator("momentum_lookback_period", "momentum_rsi_period")
    @classmethod
    def validate_period(cls, v):
        if v < 2:
            raise ValueError("Period must be at least 2")
        return v

    @field_validator("momentum_rsi_entry", "momentum_rsi_exit")
    @classmethod
    def validate_rsi_bound(cls, v):
        if v < 0 or v > 100:
            raise ValueError("RSI bounds must be between 0 and 100")
        return v


class StrategySelectionConfig(BaseSettings):
    """Strategy selection mode and switch rate limiting."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    default_strategy: Literal["auto", "grid", "momentum"] = Field(default="auto")
    strategy_switch_cooldown: int = Field(default=300)


class AnalysisConfig(BaseSettings):
    """Minimum market quality for a strategy to trade."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    min_liquidity_usd: float = Field(default=75000.0)
    min_volume_24h_usd: float = Field(default=25000.0)


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    database_url: str = Field(default="sqlite:///./data/dex_bot_trader.db")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_file: str = Field(default="logs/dex_bot_trader.log")
    log_file_max_size_mb: int = Field(default=10)
    log_file_backup_count: int = Field(default=7)


# =============================================================================
# Global Configuration Container
# =============================================================================


class AppConfig:
    """
    Container for all configuration sections.

    Usage:
        from src.core.config import app_config

        max_pct = app_config.bot.max_position_percent
        levels = app_config.risk.drawdown_levels
    """

    def __init__(
        self,
        system: Optional[SystemConfig] = None,
        bot: Optional[BotConfig] = None,
        risk: Optional[RiskConfig] = None,
        grid: Optional[GridConfig] = None,
        momentum: Optional[MomentumConfig] = None,
        selection: Optional[StrategySelectionConfig] = None,
        analysis: Optional[AnalysisConfig] = None,
        database: Optional[DatabaseConfig] = None,
        logging: Optional[LoggingConfig] = None,
    ):
        self.system = system or SystemConfig()
        self.bot = bot or BotConfig()
        self.risk = risk or RiskConfig()
        self.grid = grid or GridConfig()
        self.momentum = momentum or MomentumConfig()
        self.selection = selection or StrategySelectionConfig()
        self.analysis = analysis or AnalysisConfig()
        self.database = database or DatabaseConfig()
        self.logging = logging or LoggingConfig()

    @property
    def is_paper_trading(self) -> bool:
        return self.bot.trading_mode == "paper"

    def validate_configuration(self) -> dict:
        """
        Validate cross-section constraints and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []
        risk = self.risk

        if not (risk.drawdown_level_1 < risk.drawdown_level_2 <= risk.max_drawdown_percent):
            issues.append("Drawdown levels must be in ascending order of severity")

        if risk.max_drawdown_percent < risk.drawdown_level_2:
            issues.append("MAX_DRAWDOWN_PERCENT must be >= DRAWDOWN_LEVEL_2")

        total_amount = sum(level.amount for level in risk.take_profit_levels)
        if total_amount != Decimal("1"):
            issues.append(f"Take-profit amounts ({total_amount}) should sum to 1.0")

        if risk.conservative_position_percent > self.bot.max_position_percent:
            issues.append("Conservative position percent must not exceed max_position_percent")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

app_config = AppConfig()


__all__ = [
    "AppConfig",
    "app_config",
    "SystemConfig",
    "BotConfig",
    "RiskConfig",
    "GridConfig",
    "MomentumConfig",
    "StrategySelectionConfig",
    "AnalysisConfig",
    "DatabaseConfig",
    "LoggingConfig",
]

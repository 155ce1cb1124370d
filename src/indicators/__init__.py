"""Technical indicators consumed by the strategies."""
from src.indicators.ema import (
    calculate_distance_from_ema,
    calculate_ema,
    calculate_multiple_emas,
    detect_ema_crossover,
    is_price_above_ema,
    is_price_below_ema,
)
from src.indicators.rsi import (
    calculate_rsi,
    interpret_rsi,
    is_rsi_buy_signal,
    is_rsi_sell_signal,
)
from src.indicators.volatility import calculate_volatility

__all__ = [
    "calculate_rsi",
    "interpret_rsi",
    "is_rsi_buy_signal",
    "is_rsi_sell_signal",
    "calculate_ema",
    "calculate_multiple_emas",
    "detect_ema_crossover",
    "is_price_above_ema",
    "is_price_below_ema",
    "calculate_distance_from_ema",
    "calculate_volatility",
]

"""Exponential Moving Average (EMA) helpers."""
from typing import Dict, Iterable, Optional, Sequence

import numpy as np


def calculate_ema(prices: Sequence, period: int = 9) -> Optional[float]:
    """
    Calculate the EMA of a price series.

    Seeded with the simple average of the first ``period`` prices, then
    smoothed with ``2 / (period + 1)``. Returns None with fewer than
    ``period`` prices.
    """
    if prices is None or len(prices) < period:
        return None

    values = np.asarray([float(p) for p in prices], dtype=float)
    multiplier = 2 / (period + 1)

    ema = values[:period].mean()
    for price in values[period:]:
        ema = (price - ema) * multiplier + ema

    return float(ema)


def calculate_multiple_emas(
    prices: Sequence, periods: Iterable[int] = (9, 21, 50)
) -> Dict[str, Optional[float]]:
    return {f"ema{period}": calculate_ema(prices, period) for period in periods}


def detect_ema_crossover(
    prices: Sequence, fast_period: int = 9, slow_period: int = 21
) -> Optional[str]:
    """Return 'bullish' or 'bearish' if the fast EMA crossed the slow EMA on the last price."""
    if prices is None or len(prices) < slow_period + 2:
        return None

    current_fast = calculate_ema(prices, fast_period)
    current_slow = calculate_ema(prices, slow_period)
    previous = list(prices)[:-1]
    previous_fast = calculate_ema(previous, fast_period)
    previous_slow = calculate_ema(previous, slow_period)

    if None in (current_fast, current_slow, previous_fast, previous_slow):
        return None

    if previous_fast <= previous_slow and current_fast > current_slow:
        return "bullish"
    if previous_fast >= previous_slow and current_fast < current_slow:
        return "bearish"
    return None


def is_price_above_ema(current_price, ema) -> bool:
    return float(current_price) > float(ema)


def is_price_below_ema(current_price, ema) -> bool:
    return float(current_price) < float(ema)


def calculate_distance_from_ema(current_price, ema) -> Optional[float]:
    """Percent distance of the price from the EMA."""
    if not ema:
        return None
    return (float(current_price) - float(ema)) / float(ema) * 100

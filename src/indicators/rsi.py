"""Relative Strength Index (RSI)."""
from typing import Optional, Sequence

import numpy as np

OVERBOUGHT = 70.0
OVERSOLD = 30.0


def calculate_rsi(prices: Sequence, period: int = 14) -> Optional[float]:
    """
    Calculate RSI over the last ``period`` price changes.

    Uses simple averages of gains and losses over the window. Returns None
    when fewer than ``period + 1`` prices are available, and 100 when the
    window contains no losses.
    """
    if prices is None or len(prices) < period + 1:
        return None

    changes = np.diff(np.asarray([float(p) for p in prices], dtype=float))[-period:]
    avg_gain = np.clip(changes, 0, None).sum() / period
    avg_loss = -np.clip(changes, None, 0).sum() / period

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def interpret_rsi(rsi: Optional[float]) -> str:
    if rsi is None:
        return "insufficient_data"
    if rsi > OVERBOUGHT:
        return "overbought"
    if rsi < OVERSOLD:
        return "oversold"
    return "neutral"


def is_rsi_buy_signal(rsi: Optional[float], threshold: float = OVERSOLD) -> bool:
    return rsi is not None and rsi < threshold


def is_rsi_sell_signal(rsi: Optional[float], threshold: float = OVERBOUGHT) -> bool:
    return rsi is not None and rsi > threshold

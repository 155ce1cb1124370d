"""Price volatility."""
from typing import Optional, Sequence

import numpy as np


def calculate_volatility(prices: Sequence) -> Optional[float]:
    """Population standard deviation of simple returns, or None with fewer than 2 prices."""
    if prices is None or len(prices) < 2:
        return None

    values = np.asarray([float(p) for p in prices], dtype=float)
    if np.any(values[:-1] == 0):
        return None

    returns = np.diff(values) / values[:-1]
    return float(np.std(returns))

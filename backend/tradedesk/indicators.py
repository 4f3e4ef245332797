from __future__ import annotations

from typing import List, Sequence


def sma(prices: Sequence[float], period: int) -> List[float]:
    """Simple moving average over a sliding window of `period` prices.

    Returns ``len(prices) - period + 1`` values, or an empty list when the
    window does not fit.
    """

    period = int(period)
    if period <= 0 or period > len(prices):
        return []

    values = [float(p) for p in prices]
    window_sum = sum(values[:period])
    out = [window_sum / period]
    for i in range(period, len(values)):
        window_sum += values[i] - values[i - period]
        out.append(window_sum / period)
    return out


def rsi(prices: Sequence[float], period: int = 14) -> List[float]:
    """Relative strength index using plain average gain / average loss.

    Each value is computed from the `period` price changes preceding it. A
    window without losses yields 100 instead of dividing by zero.
    """

    period = int(period)
    if period <= 0:
        return []

    values = [float(p) for p in prices]
    changes = [cur - prev for prev, cur in zip(values[:-1], values[1:])]

    out: List[float] = []
    for i in range(period, len(changes)):
        window = changes[i - period : i]
        avg_gain = sum(c for c in window if c > 0) / period
        avg_loss = sum(-c for c in window if c < 0) / period
        if avg_loss == 0:
            out.append(100.0)
            continue
        rs = avg_gain / avg_loss
        out.append(100.0 - (100.0 / (1.0 + rs)))
    return out

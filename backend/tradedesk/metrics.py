from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from statistics import mean, pstdev
from typing import Any, Dict, List, Sequence

from .equity_curve import EquityCurvePoint
from .portfolio import TradeEvent

DAILY_RISK_FREE_RATE = 0.0002
TRADING_DAYS_PER_YEAR = 252


@dataclass(frozen=True)
class PerformanceMetrics:
    """Summary statistics for a finished backtest. Percentages are 0-100."""

    final_value: float
    total_return_pct: float
    sharpe_ratio: float
    max_drawdown_pct: float
    win_rate_pct: float
    total_trades: int
    avg_trade_pnl: float
    volatility_pct: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def _step_returns(values: Sequence[float]) -> List[float]:
    returns: List[float] = []
    for prev, cur in zip(values[:-1], values[1:]):
        # A non-positive base has no meaningful relative return.
        returns.append((cur - prev) / prev if prev > 0 else 0.0)
    return returns


def _max_drawdown(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    peak = values[0]
    max_dd = 0.0
    for v in values:
        if v > peak:
            peak = v
        if peak > 0:
            dd = (peak - v) / peak
            if dd > max_dd:
                max_dd = dd
    return max_dd


def compute_metrics(
    equity_curve: Sequence[EquityCurvePoint],
    trades: Sequence[TradeEvent],
    initial_capital: float,
    *,
    risk_free_rate: float = DAILY_RISK_FREE_RATE,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> PerformanceMetrics:
    """Compute return, risk and trade statistics.

    Pure function of its inputs. Any ratio whose denominator is zero, or that
    needs two or more equity points and does not have them, is reported as 0.
    """

    values = [float(pt.value) for pt in equity_curve]
    final_value = values[-1] if values else float(initial_capital)

    total_return_pct = 0.0
    if initial_capital > 0:
        total_return_pct = (final_value - initial_capital) / initial_capital * 100.0

    returns = _step_returns(values)
    sharpe = 0.0
    volatility_pct = 0.0
    if returns:
        mean_r = mean(returns)
        # Population standard deviation, as the per-step series is the whole run.
        std_r = pstdev(returns)
        if std_r > 0:
            sharpe = (mean_r - risk_free_rate) / std_r
        volatility_pct = std_r * math.sqrt(periods_per_year) * 100.0

    total_trades = len(trades)
    win_rate_pct = 0.0
    avg_trade_pnl = 0.0
    if total_trades:
        pnls = [t.pnl or 0.0 for t in trades]
        wins = sum(1 for p in pnls if p > 0)
        win_rate_pct = wins / total_trades * 100.0
        avg_trade_pnl = sum(pnls) / total_trades

    return PerformanceMetrics(
        final_value=_finite(final_value),
        total_return_pct=_finite(total_return_pct),
        sharpe_ratio=_finite(sharpe),
        max_drawdown_pct=_finite(_max_drawdown(values) * 100.0),
        win_rate_pct=_finite(win_rate_pct),
        total_trades=total_trades,
        avg_trade_pnl=_finite(avg_trade_pnl),
        volatility_pct=_finite(volatility_pct),
    )

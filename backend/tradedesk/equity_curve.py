from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Sequence

from .market_data import HistoricalBar
from .portfolio import Side, TradeEvent


@dataclass(frozen=True)
class EquityCurvePoint:
    """Total portfolio value (cash + marked positions) at one timestamp."""

    timestamp: datetime
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value": self.value}


def reconstruct_equity_curve(
    trades: Sequence[TradeEvent],
    historical_data: Mapping[str, Sequence[HistoricalBar]],
    initial_capital: float,
) -> List[EquityCurvePoint]:
    """Replay trades against the bar series into a mark-to-market curve.

    The time axis is the sorted union of every symbol's bar timestamps. At
    each timestamp all trades stamped at or before it are applied first, then
    held quantities are valued at that symbol's close for that exact
    timestamp. A held symbol without a bar at the timestamp contributes 0.
    """

    closes: Dict[str, Dict[datetime, float]] = {
        symbol: {bar.timestamp: bar.close for bar in bars}
        for symbol, bars in historical_data.items()
    }
    axis = sorted({ts for by_ts in closes.values() for ts in by_ts})

    # Stable sort keeps the order in which the script placed same-time orders.
    ordered = sorted(trades, key=lambda t: t.timestamp)

    cash = float(initial_capital)
    positions: Dict[str, int] = {}
    curve: List[EquityCurvePoint] = []
    idx = 0

    for ts in axis:
        while idx < len(ordered) and ordered[idx].timestamp <= ts:
            trade = ordered[idx]
            notional = trade.quantity * trade.price
            if trade.side is Side.BUY:
                positions[trade.symbol] = positions.get(trade.symbol, 0) + trade.quantity
                cash -= notional
            else:
                positions[trade.symbol] = positions.get(trade.symbol, 0) - trade.quantity
                cash += notional
            idx += 1

        value = cash
        for symbol, qty in positions.items():
            if qty <= 0:
                continue
            close = closes.get(symbol, {}).get(ts)
            if close is not None:
                value += qty * close
        curve.append(EquityCurvePoint(timestamp=ts, value=value))

    return curve

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List

from .timestamps import normalise_timestamp


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class TradeEvent:
    """Single accepted fill recorded by the simulator."""

    symbol: str
    side: Side
    quantity: int
    price: float
    timestamp: datetime
    # Realised PnL against the average entry cost; only set for sells.
    pnl: float | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "price": self.price,
            "timestamp": self.timestamp.isoformat(),
            "pnl": self.pnl,
        }


@dataclass
class PortfolioState:
    """Cash plus long-only share counts per symbol."""

    cash: float
    positions: Dict[str, int] = field(default_factory=dict)
    avg_cost: Dict[str, float] = field(default_factory=dict)


class TradeLedger:
    """Portfolio simulator mutated only through `buy` and `sell`.

    Orders that would overdraw cash or sell more than is held are rejected
    without raising, the same way a broker rejects an order without taking the
    client down. Rejections are counted by reason for diagnostics.
    """

    def __init__(self, initial_capital: float) -> None:
        self._state = PortfolioState(cash=float(initial_capital))
        self._trades: List[TradeEvent] = []
        self.rejections: Counter[str] = Counter()

    @property
    def cash(self) -> float:
        return self._state.cash

    @property
    def positions(self) -> Dict[str, int]:
        return dict(self._state.positions)

    @property
    def trades(self) -> List[TradeEvent]:
        return list(self._trades)

    @property
    def rejected_orders(self) -> int:
        return sum(self.rejections.values())

    def _parse_order(
        self,
        symbol: object,
        quantity: object,
        price: object,
        timestamp: object,
    ) -> tuple[str, int, float, datetime] | None:
        if not isinstance(symbol, str) or not symbol.strip():
            return None

        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)):
            return None
        if isinstance(quantity, float):
            if not quantity.is_integer():
                return None
            quantity = int(quantity)
        if quantity <= 0:
            return None

        if isinstance(price, bool) or not isinstance(price, (int, float)):
            return None
        price_f = float(price)
        if not math.isfinite(price_f) or price_f <= 0.0:
            return None

        try:
            ts = normalise_timestamp(timestamp)
        except (TypeError, ValueError):
            return None

        return symbol, int(quantity), price_f, ts

    def buy(self, symbol: object, quantity: object, price: object, timestamp: object) -> bool:
        order = self._parse_order(symbol, quantity, price, timestamp)
        if order is None:
            self.rejections["invalid_order"] += 1
            return False
        sym, qty, px, ts = order

        cost = qty * px
        if cost > self._state.cash:
            self.rejections["insufficient_cash"] += 1
            return False

        held = self._state.positions.get(sym, 0)
        prev_cost = self._state.avg_cost.get(sym, 0.0)
        self._state.cash -= cost
        self._state.positions[sym] = held + qty
        self._state.avg_cost[sym] = (prev_cost * held + cost) / (held + qty)
        self._trades.append(
            TradeEvent(symbol=sym, side=Side.BUY, quantity=qty, price=px, timestamp=ts)
        )
        return True

    def sell(self, symbol: object, quantity: object, price: object, timestamp: object) -> bool:
        order = self._parse_order(symbol, quantity, price, timestamp)
        if order is None:
            self.rejections["invalid_order"] += 1
            return False
        sym, qty, px, ts = order

        held = self._state.positions.get(sym, 0)
        if held < qty:
            self.rejections["insufficient_position"] += 1
            return False

        entry_cost = self._state.avg_cost.get(sym, 0.0)
        self._state.cash += qty * px
        remaining = held - qty
        if remaining == 0:
            # Flat again: drop the symbol so `positions` only lists holdings.
            del self._state.positions[sym]
            self._state.avg_cost.pop(sym, None)
        else:
            self._state.positions[sym] = remaining
        self._trades.append(
            TradeEvent(
                symbol=sym,
                side=Side.SELL,
                quantity=qty,
                price=px,
                timestamp=ts,
                pnl=(px - entry_cost) * qty,
            )
        )
        return True

    def portfolio_view(self) -> "PortfolioView":
        return PortfolioView(self._state)

    def trades_view(self) -> "TradesView":
        return TradesView(self._trades)


class PortfolioView(Mapping):
    """Read-only, live view of the portfolio handed to strategy scripts.

    Supports both ``portfolio["cash"]`` and ``portfolio.cash``.
    """

    _KEYS = ("cash", "positions")

    def __init__(self, state: PortfolioState) -> None:
        self._state = state

    @property
    def cash(self) -> float:
        return self._state.cash

    @property
    def positions(self) -> Mapping[str, int]:
        return MappingProxyType(self._state.positions)

    def __getitem__(self, key: str) -> Any:
        if key == "cash":
            return self.cash
        if key == "positions":
            return self.positions
        raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._KEYS)

    def __len__(self) -> int:
        return len(self._KEYS)


class TradesView(Sequence):
    """Read-only, live view of the accepted trades."""

    def __init__(self, trades: List[TradeEvent]) -> None:
        self._trades = trades

    def __getitem__(self, index):  # type: ignore[override]
        if isinstance(index, slice):
            return [_script_trade(t) for t in self._trades[index]]
        return _script_trade(self._trades[index])

    def __len__(self) -> int:
        return len(self._trades)


def _script_trade(trade: TradeEvent) -> Mapping[str, Any]:
    # Scripts compare trade timestamps with bar timestamps, so keep datetimes.
    payload = trade.to_dict()
    payload["timestamp"] = trade.timestamp
    return MappingProxyType(payload)

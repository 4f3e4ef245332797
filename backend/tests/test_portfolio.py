from datetime import datetime

import pytest

from tradedesk.portfolio import Side, TradeLedger

TS = datetime(2024, 1, 1)


def test_buy_then_sell_round_trip_updates_cash_positions_and_pnl() -> None:
    ledger = TradeLedger(10_000)

    assert ledger.buy("AAA", 10, 100.0, TS) is True
    assert ledger.cash == pytest.approx(9_000.0)
    assert ledger.positions == {"AAA": 10}

    assert ledger.sell("AAA", 10, 110.0, datetime(2024, 1, 2)) is True
    assert ledger.cash == pytest.approx(10_100.0)
    # Flat symbols are removed from the position map.
    assert ledger.positions == {}

    buy, sell = ledger.trades
    assert buy.side is Side.BUY and buy.pnl is None
    assert sell.side is Side.SELL
    assert sell.pnl == pytest.approx(100.0)


def test_buy_rejected_when_cash_insufficient() -> None:
    ledger = TradeLedger(1_000)

    assert ledger.buy("AAA", 20, 100.0, TS) is False
    assert ledger.cash == pytest.approx(1_000.0)
    assert ledger.positions == {}
    assert ledger.trades == []
    assert ledger.rejections["insufficient_cash"] == 1


def test_sell_rejected_without_holding() -> None:
    ledger = TradeLedger(5_000)

    assert ledger.sell("AAA", 5, 100.0, TS) is False
    assert ledger.cash == pytest.approx(5_000.0)
    assert ledger.positions == {}
    assert ledger.trades == []
    assert ledger.rejected_orders == 1


def test_partial_sell_uses_average_entry_cost() -> None:
    ledger = TradeLedger(10_000)
    ledger.buy("AAA", 10, 100.0, TS)
    ledger.buy("AAA", 10, 120.0, TS)

    assert ledger.sell("AAA", 5, 130.0, TS) is True
    assert ledger.positions == {"AAA": 15}
    # Average entry is 110, so 5 * (130 - 110).
    assert ledger.trades[-1].pnl == pytest.approx(100.0)


@pytest.mark.parametrize(
    "symbol, quantity, price, timestamp",
    [
        ("", 1, 100.0, TS),
        ("AAA", 0, 100.0, TS),
        ("AAA", -3, 100.0, TS),
        ("AAA", 1.5, 100.0, TS),
        ("AAA", True, 100.0, TS),
        ("AAA", 1, 0.0, TS),
        ("AAA", 1, float("nan"), TS),
        ("AAA", 1, "100", TS),
        ("AAA", 1, 100.0, "not a date"),
    ],
)
def test_malformed_orders_are_rejected_without_side_effects(symbol, quantity, price, timestamp) -> None:
    ledger = TradeLedger(10_000)

    assert ledger.buy(symbol, quantity, price, timestamp) is False
    assert ledger.cash == pytest.approx(10_000.0)
    assert ledger.trades == []
    assert ledger.rejections["invalid_order"] == 1


def test_integral_float_quantity_and_iso_timestamp_are_accepted() -> None:
    ledger = TradeLedger(10_000)

    assert ledger.buy("AAA", 2.0, 50, "2024-01-05T09:15:00+05:30") is True
    trade = ledger.trades[0]
    assert trade.quantity == 2
    assert trade.timestamp == datetime(2024, 1, 5, 9, 15)


def test_invariants_hold_over_a_sequence_of_orders() -> None:
    ledger = TradeLedger(2_000)
    orders = [
        ("buy", "AAA", 5, 100.0),
        ("buy", "BBB", 10, 50.0),
        ("sell", "AAA", 10, 105.0),
        ("buy", "AAA", 20, 100.0),
        ("sell", "BBB", 4, 55.0),
        ("sell", "AAA", 5, 90.0),
        ("sell", "CCC", 1, 10.0),
    ]
    for side, symbol, qty, price in orders:
        getattr(ledger, side)(symbol, qty, price, TS)
        assert ledger.cash >= 0
        assert all(q > 0 for q in ledger.positions.values())

    assert ledger.positions == {"BBB": 6}
    assert ledger.rejected_orders == 3


def test_views_are_live_and_read_only() -> None:
    ledger = TradeLedger(1_000)
    portfolio = ledger.portfolio_view()
    trades = ledger.trades_view()

    ledger.buy("AAA", 2, 100.0, TS)

    assert portfolio["cash"] == pytest.approx(800.0)
    assert portfolio.cash == pytest.approx(800.0)
    assert portfolio["positions"]["AAA"] == 2
    assert len(trades) == 1
    assert trades[0]["side"] == "BUY"
    assert trades[0]["timestamp"] == TS

    with pytest.raises(TypeError):
        portfolio["positions"]["AAA"] = 100  # type: ignore[index]
    with pytest.raises(TypeError):
        trades[0]["price"] = 1.0  # type: ignore[index]

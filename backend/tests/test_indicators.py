import pytest

from tradedesk.indicators import rsi, sma


def test_sma_sliding_window_values() -> None:
    assert sma([1, 2, 3, 4, 5], 3) == pytest.approx([2.0, 3.0, 4.0])


def test_sma_length_and_degenerate_periods() -> None:
    prices = [10.0, 11.0, 12.0, 13.0]
    assert len(sma(prices, 2)) == len(prices) - 2 + 1
    assert sma(prices, 4) == pytest.approx([11.5])
    assert sma(prices, 5) == []
    assert sma(prices, 0) == []
    assert sma([], 3) == []


def test_rsi_all_gains_is_100() -> None:
    # 16 strictly increasing prices -> 15 changes -> 1 RSI value with period 14.
    prices = [100.0 + i for i in range(16)]
    values = rsi(prices, 14)
    assert values == [100.0]


def test_rsi_is_bounded_for_mixed_series() -> None:
    prices = [100, 102, 101, 103, 99, 98, 104, 105, 101, 100, 102, 97, 99, 103, 104, 100, 98]
    values = rsi(prices, 5)
    assert values
    for v in values:
        assert 0.0 <= v <= 100.0


def test_rsi_all_losses_is_zero() -> None:
    prices = [200.0 - i for i in range(10)]
    assert rsi(prices, 3) == pytest.approx([0.0] * (len(prices) - 1 - 3))


def test_rsi_short_series_is_empty() -> None:
    assert rsi([1.0, 2.0, 3.0], 14) == []


def test_rsi_skips_the_final_window() -> None:
    prices = [float(p) for p in range(15)]
    assert rsi(prices, 14) == []
    assert rsi(prices + [15.0], 14) == [100.0]

from tradedesk.symbol_resolution import extract_symbols_from_strategy, resolve_strategy_symbols


def test_extracts_symbol_and_instrument_literals_in_order() -> None:
    code = (
        'symbol = "INFY"\n'
        "params = dict(instrument = 'TCS')\n"
        'SYMBOL="INFY"\n'
        "other = {instrument: `HDFCBANK`}\n"
    )

    assert extract_symbols_from_strategy(code, "RELIANCE") == ["INFY", "TCS", "HDFCBANK"]


def test_falls_back_when_nothing_matches() -> None:
    assert extract_symbols_from_strategy("buy('X', 1, 1, t)", "RELIANCE") == ["RELIANCE"]


def test_declared_symbols_take_priority_over_code() -> None:
    resolved = resolve_strategy_symbols(
        'symbol = "INFY"', [" TCS ", "TCS", "WIPRO"], fallback="RELIANCE"
    )

    assert resolved.symbols == ["TCS", "WIPRO"]
    assert resolved.source == "declared"


def test_resolution_sources() -> None:
    from_code = resolve_strategy_symbols('symbol = "INFY"', None, fallback="RELIANCE")
    assert from_code.symbols == ["INFY"]
    assert from_code.source == "code"

    fallback = resolve_strategy_symbols("pass", [], fallback="RELIANCE")
    assert fallback.symbols == ["RELIANCE"]
    assert fallback.source == "fallback"

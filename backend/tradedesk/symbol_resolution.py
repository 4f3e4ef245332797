from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Sequence

logger = logging.getLogger(__name__)

# Matches `symbol = "X"`, `instrument: 'X'`, `SYMBOL="X"` and similar literals.
_SYMBOL_PATTERN = re.compile(
    r"(?:symbol|instrument)\s*[=:]\s*['\"`]([^'\"`]+)['\"`]",
    re.IGNORECASE,
)


@dataclass
class ResolvedSymbols:
    symbols: List[str]
    source: str  # 'declared', 'code' or 'fallback'


def _normalise_symbol(raw_symbol: str) -> str:
    return raw_symbol.strip()


def extract_symbols_from_strategy(code: str, fallback: str) -> List[str]:
    """Return the symbols a strategy mentions in `symbol=`/`instrument=` literals.

    This is a text heuristic, not a parse: commented-out lines match too.
    Order of first appearance is kept; duplicates are dropped. Returns
    ``[fallback]`` when nothing matches.
    """

    symbols: List[str] = []
    for match in _SYMBOL_PATTERN.finditer(code or ""):
        symbol = _normalise_symbol(match.group(1))
        if symbol and symbol not in symbols:
            symbols.append(symbol)
    return symbols or [fallback]


def resolve_strategy_symbols(
    code: str,
    declared: Sequence[str] | None,
    *,
    fallback: str,
) -> ResolvedSymbols:
    """Resolve the symbols a backtest needs data for.

    Resolution order:
    1. Symbols declared alongside the strategy.
    2. Literals found in the strategy source.
    3. The configured fallback symbol.
    """

    declared_clean: List[str] = []
    for raw in declared or []:
        symbol = _normalise_symbol(str(raw))
        if symbol and symbol not in declared_clean:
            declared_clean.append(symbol)
    if declared_clean:
        return ResolvedSymbols(symbols=declared_clean, source="declared")

    symbols = extract_symbols_from_strategy(code, fallback)
    if symbols == [fallback] and not _SYMBOL_PATTERN.search(code or ""):
        logger.warning(
            "No symbols found in strategy code; defaulting to %s", fallback
        )
        return ResolvedSymbols(symbols=symbols, source="fallback")
    return ResolvedSymbols(symbols=symbols, source="code")

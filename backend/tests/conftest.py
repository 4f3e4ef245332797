from __future__ import annotations

import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List

import pandas as pd
import pytest

# Point the meta DB at a throwaway file before any tradedesk module builds its
# engine, and make sure no live provider is configured.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="tradedesk-tests-"))
os.environ.setdefault("TRADEDESK_META_DB_PATH", str(_TMP_DIR / "meta.db"))
os.environ.setdefault("TRADEDESK_ENVIRONMENT", "test")
os.environ.pop("TRADEDESK_UPSTOX_ACCESS_TOKEN", None)

from tradedesk.market_data import HistoricalBar  # noqa: E402


def make_bars(closes: List[float], start: datetime | None = None) -> List[HistoricalBar]:
    """Daily bars with the given closes, one per calendar day."""

    idx = pd.date_range(start or datetime(2024, 1, 1), periods=len(closes), freq="D")
    return [
        HistoricalBar(
            timestamp=idx[i].to_pydatetime(),
            open=float(close),
            high=float(close) + 1.0,
            low=float(close) - 1.0,
            close=float(close),
            volume=1000.0,
        )
        for i, close in enumerate(closes)
    ]


class StaticProvider:
    """Provider serving canned bars and failing for unknown symbols."""

    def __init__(self, bars: Dict[str, List[HistoricalBar]]) -> None:
        self.bars = bars
        self.calls: List[str] = []

    def fetch(self, symbol, start, end, granularity):  # type: ignore[no-untyped-def]
        from tradedesk.errors import DataFetchError

        self.calls.append(symbol)
        if symbol not in self.bars:
            raise DataFetchError(symbol, "unknown symbol")
        return list(self.bars[symbol])


@pytest.fixture()
def static_provider() -> StaticProvider:
    return StaticProvider({"TESTBT": make_bars([100.0 + i for i in range(30)])})

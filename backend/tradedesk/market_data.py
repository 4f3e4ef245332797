from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Protocol, Sequence
from urllib.parse import quote

import httpx
import numpy as np

from .config import Settings
from .errors import DataFetchError
from .timestamps import normalise_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoricalBar:
    """Single OHLCV bar for one symbol at one granularity step."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


class HistoricalDataProvider(Protocol):
    """Source of historical bars; may fail per symbol with `DataFetchError`."""

    def fetch(
        self,
        symbol: str,
        start: date,
        end: date,
        granularity: str,
    ) -> List[HistoricalBar]: ...


def _map_granularity_to_upstox_interval(granularity: str) -> str:
    """Map internal granularity tokens to Upstox candle intervals.

    Supported inputs include: 1m, 1minute, 30m, 30minute, 1d, 1day, day,
    1w, week, 1mo, month.
    """

    tf = granularity.strip().lower()
    mapping = {
        "1m": "1minute",
        "1minute": "1minute",
        "30m": "30minute",
        "30minute": "30minute",
        "1d": "day",
        "1day": "day",
        "day": "day",
        "1w": "week",
        "week": "week",
        "1mo": "month",
        "month": "month",
    }
    if tf in mapping:
        return mapping[tf]
    raise ValueError(f"Unsupported Upstox granularity: {granularity}")


def _map_granularity_to_yf_interval(granularity: str) -> str:
    tf = granularity.strip().lower()
    mapping = {
        "1m": "1m",
        "1minute": "1m",
        "5m": "5m",
        "5minute": "5m",
        "15m": "15m",
        "15minute": "15m",
        "30m": "30m",
        "30minute": "30m",
        "1h": "60m",
        "1hour": "60m",
        "1d": "1d",
        "1day": "1d",
        "day": "1d",
        "1w": "1wk",
        "week": "1wk",
    }
    if tf in mapping:
        return mapping[tf]
    raise ValueError(f"Unsupported yfinance granularity: {granularity}")


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


class UpstoxHistoricalDataProvider:
    """Historical candles from the Upstox v2 REST API."""

    def __init__(
        self,
        *,
        access_token: str | None,
        base_url: str = "https://api.upstox.com/v2",
        timeout_seconds: float = 20.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self._access_token}",
        }

    def fetch(
        self,
        symbol: str,
        start: date,
        end: date,
        granularity: str,
    ) -> List[HistoricalBar]:
        if not self._access_token:
            raise DataFetchError(symbol, "Upstox access token is not configured")

        try:
            interval = _map_granularity_to_upstox_interval(granularity)
        except ValueError as exc:
            raise DataFetchError(symbol, str(exc)) from exc

        # Upstox expects the window newest-first: /{to}/{from}.
        url = (
            f"{self._base_url}/historical-candle/{quote(symbol, safe='')}/{interval}/"
            f"{_as_date(end).isoformat()}/{_as_date(start).isoformat()}"
        )

        try:
            if self._client is not None:
                response = self._client.get(url, headers=self._headers())
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.get(url, headers=self._headers())
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise DataFetchError(symbol, f"Upstox request failed: {exc}") from exc
        except ValueError as exc:
            raise DataFetchError(symbol, "Upstox returned invalid JSON") from exc

        try:
            candles = payload["data"]["candles"]
            bars = [
                HistoricalBar(
                    timestamp=normalise_timestamp(candle[0]),
                    open=float(candle[1]),
                    high=float(candle[2]),
                    low=float(candle[3]),
                    close=float(candle[4]),
                    volume=float(candle[5] or 0.0),
                )
                for candle in candles
            ]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise DataFetchError(symbol, f"Malformed Upstox candle payload: {exc}") from exc

        return sorted(bars, key=lambda b: b.timestamp)


class YFinanceHistoricalDataProvider:
    """Historical bars from Yahoo Finance, for users without a linked account."""

    def __init__(self, *, suffix: str = ".NS") -> None:
        self._suffix = suffix

    def _normalise_symbol(self, symbol: str) -> str:
        if "." in symbol or ":" in symbol or not self._suffix:
            return symbol
        return f"{symbol}{self._suffix}"

    def fetch(
        self,
        symbol: str,
        start: date,
        end: date,
        granularity: str,
    ) -> List[HistoricalBar]:
        import yfinance as yf

        try:
            interval = _map_granularity_to_yf_interval(granularity)
        except ValueError as exc:
            raise DataFetchError(symbol, str(exc)) from exc

        try:
            # yfinance treats `end` as exclusive.
            df = yf.download(
                self._normalise_symbol(symbol),
                start=_as_date(start),
                end=_as_date(end) + timedelta(days=1),
                interval=interval,
                progress=False,
                auto_adjust=False,
                multi_level_index=False,
            )
        except Exception as exc:
            raise DataFetchError(symbol, f"yfinance download failed: {exc}") from exc

        if df is None or df.empty:
            return []

        df = df.dropna(subset=["Open", "High", "Low", "Close"])
        bars: List[HistoricalBar] = []
        for ts, row in df.iterrows():
            volume = row["Volume"] if "Volume" in row else 0.0
            bars.append(
                HistoricalBar(
                    timestamp=normalise_timestamp(ts.to_pydatetime()),
                    open=float(row["Open"]),
                    high=float(row["High"]),
                    low=float(row["Low"]),
                    close=float(row["Close"]),
                    volume=float(volume or 0.0),
                )
            )
        return bars


def generate_synthetic_bars(
    start: date,
    end: date,
    rng: np.random.Generator | None = None,
) -> List[HistoricalBar]:
    """Random-walk daily bars used when a provider cannot serve a symbol.

    The seed price is uniform in [1000, 3000]; each calendar day from `start`
    to `end` inclusive compounds a drift uniform in [-1%, +1%]. High/low sit
    within 1% of the day's price and volume is uniform in [10000, 100000].
    """

    generator = rng if rng is not None else np.random.default_rng()
    first = _as_date(start)
    last = _as_date(end)

    bars: List[HistoricalBar] = []
    price = float(generator.uniform(1000.0, 3000.0))
    current = first
    while current <= last:
        price *= 1.0 + float(generator.uniform(-0.01, 0.01))
        high = price * (1.0 + float(generator.uniform(0.0, 0.01)))
        low = price * (1.0 - float(generator.uniform(0.0, 0.01)))
        volume = int(generator.integers(10_000, 100_000, endpoint=True))
        bars.append(
            HistoricalBar(
                timestamp=datetime(current.year, current.month, current.day),
                open=price,
                high=high,
                low=low,
                close=price,
                volume=float(volume),
            )
        )
        current += timedelta(days=1)
    return bars


@dataclass
class HistoricalDataSet:
    """Bars per symbol plus which symbols had to be synthesised."""

    bars: Dict[str, List[HistoricalBar]] = field(default_factory=dict)
    synthetic_symbols: List[str] = field(default_factory=list)


def _unique(symbols: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for symbol in symbols:
        seen.setdefault(symbol, None)
    return list(seen)


def load_historical_data(
    provider: HistoricalDataProvider,
    symbols: Sequence[str],
    start: date,
    end: date,
    granularity: str,
    *,
    rng: np.random.Generator | None = None,
) -> HistoricalDataSet:
    """Fetch bars for every symbol, substituting synthetic bars on failure.

    Any error raised by the provider for a symbol is treated as a failed
    fetch for that symbol only. Bars that were served are kept, with their
    timestamps normalised to the naive wall-clock axis used by the ledger.
    """

    dataset = HistoricalDataSet()
    for symbol in _unique(symbols):
        try:
            bars = provider.fetch(symbol, start, end, granularity)
        except Exception as exc:
            logger.warning(
                "Historical fetch failed, using synthetic bars: %s",
                exc,
                exc_info=not isinstance(exc, DataFetchError),
                extra={"symbol": symbol},
            )
            bars = []
        else:
            if not bars:
                logger.warning(
                    "No historical bars returned for %s; using synthetic bars", symbol, extra={"symbol": symbol}
                )

        if not bars:
            bars = generate_synthetic_bars(start, end, rng)
            dataset.synthetic_symbols.append(symbol)

        normalised = [replace(bar, timestamp=normalise_timestamp(bar.timestamp)) for bar in bars]
        dataset.bars[symbol] = sorted(normalised, key=lambda b: b.timestamp)
    return dataset


def build_provider(settings: Settings) -> HistoricalDataProvider:
    """Return the configured historical data provider."""

    if settings.data_provider == "yfinance":
        return YFinanceHistoricalDataProvider()
    return UpstoxHistoricalDataProvider(
        access_token=settings.upstox_access_token,
        base_url=settings.upstox_base_url,
        timeout_seconds=settings.upstox_timeout_seconds,
    )

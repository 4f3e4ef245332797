from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List

import numpy as np

from .config import Settings, get_settings
from .equity_curve import EquityCurvePoint, reconstruct_equity_curve
from .market_data import HistoricalDataProvider, load_historical_data
from .metrics import PerformanceMetrics, compute_metrics
from .portfolio import TradeEvent
from .sandbox import StrategyInterpreter
from .symbol_resolution import resolve_strategy_symbols

logger = logging.getLogger(__name__)

# Called before each pipeline stage with (stage name, progress 0-100). It may
# raise to abort the run, which is how cooperative cancellation works.
Checkpoint = Callable[[str, int], None]


@dataclass(frozen=True)
class StrategyDefinition:
    """User-owned strategy input. Never mutated by the engine."""

    code: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    # Optional explicit symbol list; preferred over scanning the source.
    symbols: List[str] = field(default_factory=list)


@dataclass
class BacktestResult:
    """Result of a backtest run."""

    final_value: float
    total_return_pct: float
    sharpe_ratio: float
    max_drawdown_pct: float
    win_rate_pct: float
    total_trades: int
    avg_trade_pnl: float
    volatility_pct: float
    trades: List[TradeEvent]
    equity_curve: List[EquityCurvePoint]
    status: str = "completed"
    rejected_orders: int = 0
    symbols: List[str] = field(default_factory=list)
    synthetic_symbols: List[str] = field(default_factory=list)

    @classmethod
    def from_metrics(
        cls,
        metrics: PerformanceMetrics,
        *,
        trades: List[TradeEvent],
        equity_curve: List[EquityCurvePoint],
        **extra: Any,
    ) -> "BacktestResult":
        return cls(
            final_value=metrics.final_value,
            total_return_pct=metrics.total_return_pct,
            sharpe_ratio=metrics.sharpe_ratio,
            max_drawdown_pct=metrics.max_drawdown_pct,
            win_rate_pct=metrics.win_rate_pct,
            total_trades=metrics.total_trades,
            avg_trade_pnl=metrics.avg_trade_pnl,
            volatility_pct=metrics.volatility_pct,
            trades=trades,
            equity_curve=equity_curve,
            **extra,
        )

    def metrics_dict(self) -> Dict[str, float]:
        return {
            "final_value": self.final_value,
            "total_return_pct": self.total_return_pct,
            "sharpe_ratio": self.sharpe_ratio,
            "max_drawdown_pct": self.max_drawdown_pct,
            "win_rate_pct": self.win_rate_pct,
            "total_trades": float(self.total_trades),
            "avg_trade_pnl": self.avg_trade_pnl,
            "volatility_pct": self.volatility_pct,
        }

    def to_results_blob(self) -> Dict[str, Any]:
        """JSON-serialisable payload stored in the `results` column."""

        return {
            "status": self.status,
            "metrics": self.metrics_dict(),
            "trades": [t.to_dict() for t in self.trades],
            "equity_curve": [pt.to_dict() for pt in self.equity_curve],
            "rejected_orders": self.rejected_orders,
            "symbols": list(self.symbols),
            "synthetic_symbols": list(self.synthetic_symbols),
        }


class BacktestEngine:
    """Runs the fetch → interpret → reconstruct → metrics pipeline.

    Construct one per run; it holds no state shared between runs.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        interpreter: StrategyInterpreter | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._interpreter = interpreter or StrategyInterpreter(
            timeout_seconds=self._settings.strategy_timeout_seconds,
            start_method=self._settings.sandbox_start_method,
            max_log_lines=self._settings.max_strategy_log_lines,
        )
        self._rng = rng

    def run_backtest(
        self,
        strategy: StrategyDefinition,
        provider: HistoricalDataProvider,
        initial_capital: float,
        start: date,
        end: date,
        *,
        granularity: str | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> BacktestResult:
        """Run a single backtest and return an in-memory result."""

        def _stage(name: str, progress: int) -> None:
            if checkpoint is not None:
                checkpoint(name, progress)

        if initial_capital <= 0:
            raise ValueError("initial_capital must be positive")
        if start > end:
            raise ValueError("start date must not be after end date")

        resolved = resolve_strategy_symbols(
            strategy.code,
            strategy.symbols,
            fallback=self._settings.fallback_symbol,
        )

        _stage("Fetching historical data for " + ", ".join(resolved.symbols), 20)
        dataset = load_historical_data(
            provider,
            resolved.symbols,
            start,
            end,
            granularity or self._settings.default_granularity,
            rng=self._rng,
        )

        _stage("Running strategy simulation", 40)
        output = self._interpreter.run(
            strategy.code,
            strategy.parameters,
            dataset.bars,
            initial_capital,
        )
        if output.rejected_orders:
            logger.info(
                "Strategy had %d rejected orders: %s",
                output.rejected_orders,
                output.rejections,
            )

        _stage("Building equity curve", 70)
        equity_curve = reconstruct_equity_curve(
            output.trades, dataset.bars, initial_capital
        )

        _stage("Calculating performance metrics", 85)
        metrics = compute_metrics(
            equity_curve,
            output.trades,
            initial_capital,
            risk_free_rate=self._settings.risk_free_rate_daily,
            periods_per_year=self._settings.trading_days_per_year,
        )

        return BacktestResult.from_metrics(
            metrics,
            trades=output.trades,
            equity_curve=equity_curve,
            rejected_orders=output.rejected_orders,
            symbols=resolved.symbols,
            synthetic_symbols=dataset.synthetic_symbols,
        )

"""Exceptions raised by the backtest pipeline.

Rejected orders have no exception here: a ``buy``/``sell`` call that would
break the portfolio invariants is a silent no-op, counted on the ledger.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .backtest_engine import BacktestResult


class DataFetchError(RuntimeError):
    """Raised when historical bars for one symbol cannot be fetched."""

    def __init__(self, symbol: str, message: str) -> None:
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol


class StrategyExecutionError(RuntimeError):
    """Raised when a strategy script fails to compile, validate or run."""


class StrategyTimeoutError(StrategyExecutionError):
    """Raised when a strategy script exceeds its wall-clock budget."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            f"Strategy execution timed out after {timeout_seconds:g} seconds"
        )
        self.timeout_seconds = timeout_seconds


class PersistenceError(RuntimeError):
    """Raised when a finished result cannot be written to the database.

    The in-memory result is kept on the exception so the caller can retry the
    write without re-running the backtest.
    """

    def __init__(self, message: str, result: "BacktestResult | Any" = None) -> None:
        super().__init__(message)
        self.result = result


class BacktestCancelledError(RuntimeError):
    """Raised inside the pipeline when the run was cancelled by the user."""


class InvalidStatusTransition(ValueError):
    """Raised for lifecycle transitions the backtest state machine forbids."""

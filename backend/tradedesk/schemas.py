from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BacktestCreateRequest(BaseModel):
    """Request payload for scheduling a backtest via the API."""

    name: str = Field(min_length=1)
    strategy_code: str = Field(
        min_length=1,
        description="Strategy script executed inside the sandbox",
    )
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Read-only parameters exposed to the script as `parameters`",
    )
    symbols: list[str] | None = Field(
        default=None,
        description=(
            "Optional explicit symbols. When omitted they are inferred from "
            "`symbol=`/`instrument=` literals in the code"
        ),
    )
    timeframe: str = "1day"
    start_date: date
    end_date: date
    initial_capital: float = Field(default=100_000.0, gt=0)

    @model_validator(mode="after")
    def _check_window(self) -> "BacktestCreateRequest":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class BacktestRead(BaseModel):
    """Backtest record representation returned by the API."""

    id: int
    name: str
    symbols: list[str] | None = Field(default=None, validation_alias="symbols_json")
    timeframe: str
    start_date: datetime
    end_date: datetime
    initial_capital: float
    status: str
    progress: int
    progress_message: str | None = None
    error_message: str | None = None
    final_value: float | None = None
    total_return: float | None = None
    sharpe_ratio: float | None = None
    max_drawdown: float | None = None
    win_rate: float | None = None
    total_trades: int | None = None
    rejected_orders: int | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class BacktestTradeRead(BaseModel):
    """Single accepted fill from a finished backtest."""

    symbol: str
    side: str
    quantity: int
    price: float
    timestamp: datetime
    pnl: float | None = None


class BacktestEquityPointRead(BaseModel):
    """Single equity point associated with a backtest."""

    timestamp: datetime
    value: float


class BacktestCancelResponse(BaseModel):
    id: int
    status: str
    message: str

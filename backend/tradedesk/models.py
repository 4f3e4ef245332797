from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, Text

from .database import Base

BACKTEST_STATUSES = ("pending", "running", "completed", "error", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "error", "cancelled"})


class Backtest(Base):
    """Single backtest run and, once finished, its result record."""

    __tablename__ = "backtests"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    # Snapshot of the strategy definition the run was created with, so the
    # record stays reproducible if the strategy is later edited.
    strategy_code = Column(Text, nullable=False)
    strategy_parameters = Column(JSON, nullable=True)
    symbols_json = Column(JSON, nullable=True)
    timeframe = Column(String, nullable=False, default="1day")
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    initial_capital = Column(Float, nullable=False)

    # Lifecycle: pending -> running -> completed | error; cancelled from
    # pending/running. Terminal states are never reopened.
    status = Column(String, nullable=False, default="pending", index=True)
    progress = Column(Integer, nullable=False, default=0)
    progress_message = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    final_value = Column(Float, nullable=True)
    total_return = Column(Float, nullable=True)
    sharpe_ratio = Column(Float, nullable=True)
    max_drawdown = Column(Float, nullable=True)
    win_rate = Column(Float, nullable=True)
    total_trades = Column(Integer, nullable=True)
    rejected_orders = Column(Integer, nullable=True)
    results = Column(JSON, nullable=True)
    equity_curve = Column(JSON, nullable=True)

    created_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

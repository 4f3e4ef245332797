from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .backtest_engine import BacktestEngine, BacktestResult, StrategyDefinition
from .config import Settings, get_settings
from .database import SessionLocal
from .errors import BacktestCancelledError, InvalidStatusTransition, PersistenceError
from .market_data import HistoricalDataProvider, build_provider
from .models import Backtest

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


class BacktestService:
    """Orchestrates backtest runs and their persisted lifecycle.

    Every status write is a conditional update on the expected current status,
    so a cancellation committed from another session is never overwritten by
    a stage that was already in flight.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        provider: HistoricalDataProvider | None = None,
        engine_factory: Callable[[], BacktestEngine] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._provider = provider or build_provider(self._settings)
        self._engine_factory = engine_factory or (
            lambda: BacktestEngine(settings=self._settings)
        )

    def create_backtest(
        self,
        meta_db: Session,
        *,
        name: str,
        strategy: StrategyDefinition,
        start: date | datetime,
        end: date | datetime,
        initial_capital: float,
        timeframe: str | None = None,
    ) -> Backtest:
        """Persist a new backtest in `pending` state."""

        backtest = Backtest(
            name=name,
            strategy_code=strategy.code,
            strategy_parameters=dict(strategy.parameters) or None,
            symbols_json=list(strategy.symbols) or None,
            timeframe=timeframe or self._settings.default_granularity,
            start_date=_as_datetime(start),
            end_date=_as_datetime(end),
            initial_capital=float(initial_capital),
            status="pending",
            progress=0,
            progress_message="Queued",
        )
        meta_db.add(backtest)
        meta_db.commit()
        meta_db.refresh(backtest)
        logger.info("Backtest created", extra={"backtest_id": backtest.id})
        return backtest

    def _transition(
        self,
        meta_db: Session,
        backtest_id: int,
        *,
        from_statuses: Iterable[str],
        values: Dict[str, Any],
    ) -> bool:
        updated = (
            meta_db.query(Backtest)
            .filter(
                Backtest.id == backtest_id,
                Backtest.status.in_(tuple(from_statuses)),
            )
            .update(values, synchronize_session=False)
        )
        meta_db.commit()
        return updated == 1

    def _mark_error(self, meta_db: Session, backtest_id: int, message: str) -> None:
        try:
            meta_db.rollback()
            self._transition(
                meta_db,
                backtest_id,
                from_statuses=("running",),
                values={
                    "status": "error",
                    "error_message": message,
                    "progress_message": f"Error: {message}",
                    "completed_at": _utcnow(),
                },
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to record error status", extra={"backtest_id": backtest_id}
            )

    def run_backtest(self, meta_db: Session, backtest_id: int) -> BacktestResult | None:
        """Run a pending backtest to completion and persist its result.

        Returns the result, or None when the run was cancelled. Pipeline
        failures mark the record `error` and are re-raised; they are never
        retried.
        """

        backtest = meta_db.get(Backtest, backtest_id)
        if backtest is None:
            raise LookupError(f"Backtest {backtest_id} not found")
        if backtest.status == "cancelled":
            logger.info("Backtest cancelled before start", extra={"backtest_id": backtest_id})
            return None
        if backtest.status != "pending":
            raise InvalidStatusTransition(
                f"Backtest {backtest_id} is {backtest.status}; only pending backtests can run"
            )

        started = self._transition(
            meta_db,
            backtest_id,
            from_statuses=("pending",),
            values={
                "status": "running",
                "started_at": _utcnow(),
                "progress": 0,
                "progress_message": "Initializing backtest...",
            },
        )
        if not started:
            logger.info("Backtest left pending state before start", extra={"backtest_id": backtest_id})
            return None

        logger.info("Backtest running", extra={"backtest_id": backtest_id})
        meta_db.refresh(backtest)
        strategy = StrategyDefinition(
            code=backtest.strategy_code,
            parameters=dict(backtest.strategy_parameters or {}),
            symbols=list(backtest.symbols_json or []),
        )

        def _checkpoint(stage: str, progress: int) -> None:
            logger.info(
                "Backtest stage %d%%: %s",
                progress,
                stage,
                extra={"backtest_id": backtest_id, "stage": stage},
            )
            still_running = self._transition(
                meta_db,
                backtest_id,
                from_statuses=("running",),
                values={"progress": progress, "progress_message": stage},
            )
            if not still_running:
                raise BacktestCancelledError(f"Backtest {backtest_id} was cancelled")

        engine = self._engine_factory()
        try:
            result = engine.run_backtest(
                strategy,
                self._provider,
                float(backtest.initial_capital),
                backtest.start_date.date(),
                backtest.end_date.date(),
                granularity=backtest.timeframe,
                checkpoint=_checkpoint,
            )
            _checkpoint("Saving results...", 95)
        except BacktestCancelledError:
            logger.info("Backtest cancelled", extra={"backtest_id": backtest_id})
            return None
        except Exception as exc:
            logger.exception("Backtest failed", extra={"backtest_id": backtest_id})
            self._mark_error(meta_db, backtest_id, str(exc))
            raise

        try:
            completed = self._transition(
                meta_db,
                backtest_id,
                from_statuses=("running",),
                values={
                    "status": "completed",
                    "progress": 100,
                    "progress_message": "Backtest completed successfully",
                    "symbols_json": list(result.symbols),
                    "final_value": result.final_value,
                    "total_return": result.total_return_pct,
                    "sharpe_ratio": result.sharpe_ratio,
                    "max_drawdown": result.max_drawdown_pct,
                    "win_rate": result.win_rate_pct,
                    "total_trades": result.total_trades,
                    "rejected_orders": result.rejected_orders,
                    "results": result.to_results_blob(),
                    "equity_curve": [pt.to_dict() for pt in result.equity_curve],
                    "completed_at": _utcnow(),
                },
            )
        except SQLAlchemyError as exc:
            logger.exception("Failed to persist backtest result", extra={"backtest_id": backtest_id})
            self._mark_error(meta_db, backtest_id, f"Could not save results: {exc}")
            raise PersistenceError(
                f"Could not persist result for backtest {backtest_id}: {exc}",
                result=result,
            ) from exc

        if not completed:
            logger.info("Backtest cancelled while saving results", extra={"backtest_id": backtest_id})
            return None

        logger.info(
            "Backtest completed: final_value=%.2f trades=%d",
            result.final_value,
            result.total_trades,
            extra={"backtest_id": backtest_id},
        )
        return result

    def cancel_backtest(self, meta_db: Session, backtest_id: int) -> Backtest:
        """Cancel a pending or running backtest.

        Cancellation is cooperative: a running pipeline notices it at its next
        stage boundary. The strategy sandbox itself is only bounded by its
        timeout.
        """

        backtest = meta_db.get(Backtest, backtest_id)
        if backtest is None:
            raise LookupError(f"Backtest {backtest_id} not found")

        cancelled = self._transition(
            meta_db,
            backtest_id,
            from_statuses=("pending", "running"),
            values={
                "status": "cancelled",
                "progress_message": "Backtest cancelled by user",
                "completed_at": _utcnow(),
            },
        )
        meta_db.refresh(backtest)
        if not cancelled:
            raise InvalidStatusTransition(
                f"Backtest {backtest_id} is already {backtest.status}"
            )
        logger.info("Backtest cancel requested", extra={"backtest_id": backtest_id})
        return backtest


def run_backtest_job(backtest_id: int, service: BacktestService | None = None) -> None:
    """Background entry point: run a backtest in its own session.

    Failures are already recorded on the backtest row, so they are logged and
    not propagated into the server.
    """

    with SessionLocal() as session:
        try:
            (service or BacktestService()).run_backtest(session, backtest_id)
        except Exception:
            logger.exception("Background backtest job failed", extra={"backtest_id": backtest_id})

from datetime import date

import numpy as np
import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError

from conftest import StaticProvider, make_bars
from tradedesk.backtest_engine import BacktestEngine, StrategyDefinition
from tradedesk.backtest_service import BacktestService, run_backtest_job
from tradedesk.config import Settings
from tradedesk.database import Base, SessionLocal, engine, init_db
from tradedesk.errors import (
    InvalidStatusTransition,
    PersistenceError,
    StrategyExecutionError,
    StrategyTimeoutError,
)
from tradedesk.models import Backtest
from tradedesk.sandbox import execute_strategy

BUY_AND_HOLD = (
    't0 = data["TESTBT"][0]\n'
    'buy("TESTBT", 10, t0["close"], t0["timestamp"])\n'
)


class InlineInterpreter:
    def __init__(self, before_run=None) -> None:  # type: ignore[no-untyped-def]
        self.before_run = before_run

    def run(self, code, parameters, historical_data, initial_capital):  # type: ignore[no-untyped-def]
        if self.before_run is not None:
            self.before_run()
        return execute_strategy(code, parameters, historical_data, initial_capital)


def setup_function() -> None:
    Base.metadata.create_all(bind=engine)


def _service(before_run=None) -> BacktestService:  # type: ignore[no-untyped-def]
    settings = Settings()
    provider = StaticProvider({"TESTBT": make_bars([100.0 + i for i in range(30)])})
    return BacktestService(
        settings=settings,
        provider=provider,
        engine_factory=lambda: BacktestEngine(
            settings=settings,
            interpreter=InlineInterpreter(before_run),  # type: ignore[arg-type]
            rng=np.random.default_rng(5),
        ),
    )


def _create(service: BacktestService, session, code: str = BUY_AND_HOLD, capital: float = 100_000.0) -> Backtest:  # type: ignore[no-untyped-def]
    return service.create_backtest(
        session,
        name="service test",
        strategy=StrategyDefinition(code=code, symbols=["TESTBT"]),
        start=date(2024, 1, 1),
        end=date(2024, 1, 30),
        initial_capital=capital,
    )


def test_run_backtest_persists_completed_result() -> None:
    service = _service()
    with SessionLocal() as session:
        backtest = _create(service, session)
        assert backtest.status == "pending"
        assert backtest.progress == 0

        result = service.run_backtest(session, backtest.id)
        assert result is not None

        session.expire_all()
        stored = session.get(Backtest, backtest.id)
        assert stored.status == "completed"
        assert stored.progress == 100
        assert stored.started_at is not None
        assert stored.completed_at is not None
        assert stored.error_message is None
        assert stored.total_trades == 1
        # Bought 10 at 100, last close is 129.
        assert stored.final_value == pytest.approx(100_000.0 + 10 * 29.0)
        assert stored.final_value == pytest.approx(result.final_value)
        assert stored.symbols_json == ["TESTBT"]
        assert len(stored.equity_curve) == 30
        assert stored.results["trades"][0]["side"] == "BUY"
        assert stored.results["metrics"]["total_trades"] == 1


def test_strategy_failure_marks_backtest_error() -> None:
    service = _service()
    with SessionLocal() as session:
        backtest = _create(service, session, code="raise ValueError('bad signal')")

        with pytest.raises(StrategyExecutionError):
            service.run_backtest(session, backtest.id)

        session.expire_all()
        stored = session.get(Backtest, backtest.id)
        assert stored.status == "error"
        assert "bad signal" in stored.error_message
        assert stored.final_value is None


def test_invalid_capital_marks_backtest_error() -> None:
    service = _service()
    with SessionLocal() as session:
        backtest = _create(service, session, capital=0.0)

        with pytest.raises(ValueError):
            service.run_backtest(session, backtest.id)

        session.expire_all()
        assert session.get(Backtest, backtest.id).status == "error"


def test_cancelled_before_start_is_not_run() -> None:
    service = _service()
    with SessionLocal() as session:
        backtest = _create(service, session)
        service.cancel_backtest(session, backtest.id)

        assert service.run_backtest(session, backtest.id) is None

        session.expire_all()
        stored = session.get(Backtest, backtest.id)
        assert stored.status == "cancelled"
        assert stored.results is None


def test_cancel_while_running_stops_at_next_stage() -> None:
    holder = {}

    def cancel_from_other_session() -> None:
        with SessionLocal() as other:
            _service().cancel_backtest(other, holder["id"])

    service = _service(before_run=cancel_from_other_session)
    with SessionLocal() as session:
        backtest = _create(service, session)
        holder["id"] = backtest.id

        assert service.run_backtest(session, backtest.id) is None

        session.expire_all()
        stored = session.get(Backtest, backtest.id)
        assert stored.status == "cancelled"
        assert stored.final_value is None
        assert stored.progress < 100


def test_terminal_backtests_cannot_be_cancelled_or_rerun() -> None:
    service = _service()
    with SessionLocal() as session:
        backtest = _create(service, session)
        service.run_backtest(session, backtest.id)

        with pytest.raises(InvalidStatusTransition):
            service.cancel_backtest(session, backtest.id)
        with pytest.raises(InvalidStatusTransition):
            service.run_backtest(session, backtest.id)

        session.expire_all()
        assert session.get(Backtest, backtest.id).status == "completed"


def test_missing_backtest_raises_lookup_error() -> None:
    service = _service()
    with SessionLocal() as session:
        with pytest.raises(LookupError):
            service.run_backtest(session, 987_654)
        with pytest.raises(LookupError):
            service.cancel_backtest(session, 987_654)


def test_background_job_records_failure_without_raising() -> None:
    service = _service()
    with SessionLocal() as session:
        backtest = _create(service, session, code="x = 1 / 0")
        backtest_id = backtest.id

    run_backtest_job(backtest_id, service)

    with SessionLocal() as session:
        stored = session.get(Backtest, backtest_id)
        assert stored.status == "error"
        assert "ZeroDivisionError" in stored.error_message


class TimingOutInterpreter:
    def run(self, code, parameters, historical_data, initial_capital):  # type: ignore[no-untyped-def]
        raise StrategyTimeoutError(1.0)


def test_timed_out_strategy_marks_backtest_error() -> None:
    settings = Settings()
    service = BacktestService(
        settings=settings,
        provider=StaticProvider({"TESTBT": make_bars([100.0, 101.0])}),
        engine_factory=lambda: BacktestEngine(
            settings=settings,
            interpreter=TimingOutInterpreter(),  # type: ignore[arg-type]
        ),
    )
    with SessionLocal() as session:
        backtest = _create(service, session, code="while True:\n    pass\n")

        with pytest.raises(StrategyTimeoutError):
            service.run_backtest(session, backtest.id)

        session.expire_all()
        stored = session.get(Backtest, backtest.id)
        assert stored.status == "error"
        assert "timed out" in stored.error_message
        assert stored.completed_at is not None


def test_failed_result_write_marks_backtest_error(monkeypatch) -> None:
    service = _service()
    original_transition = service._transition

    def failing_transition(meta_db, backtest_id, *, from_statuses, values):  # type: ignore[no-untyped-def]
        if values.get("status") == "completed":
            raise OperationalError("UPDATE backtests", {}, Exception("disk I/O error"))
        return original_transition(
            meta_db, backtest_id, from_statuses=from_statuses, values=values
        )

    monkeypatch.setattr(service, "_transition", failing_transition)

    with SessionLocal() as session:
        backtest = _create(service, session)

        with pytest.raises(PersistenceError) as exc_info:
            service.run_backtest(session, backtest.id)
        assert exc_info.value.result is not None
        assert exc_info.value.result.total_trades == 1

        session.expire_all()
        stored = session.get(Backtest, backtest.id)
        assert stored.status == "error"
        assert "Could not save results" in stored.error_message
        assert stored.final_value is None


def test_init_db_creates_backtest_table() -> None:
    init_db()
    assert "backtests" in inspect(engine).get_table_names()

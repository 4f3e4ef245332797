from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..backtest_engine import StrategyDefinition
from ..backtest_service import BacktestService, run_backtest_job
from ..database import get_db
from ..models import BACKTEST_STATUSES, Backtest
from ..schemas import (
    BacktestCancelResponse,
    BacktestCreateRequest,
    BacktestEquityPointRead,
    BacktestRead,
    BacktestTradeRead,
)

router = APIRouter(prefix="/api/backtests", tags=["Backtests"])


def get_backtest_service() -> BacktestService:
    return BacktestService()


def _get_backtest_or_404(db: Session, backtest_id: int) -> Backtest:
    backtest = db.get(Backtest, backtest_id)
    if backtest is None:
        raise HTTPException(status_code=404, detail="Backtest not found")
    return backtest


@router.post("", response_model=BacktestRead, status_code=201)
async def create_backtest(
    payload: BacktestCreateRequest,
    background_tasks: BackgroundTasks,
    meta_db: Session = Depends(get_db),
    service: BacktestService = Depends(get_backtest_service),
) -> BacktestRead:
    """Persist a pending backtest and run it after the response is sent."""

    strategy = StrategyDefinition(
        code=payload.strategy_code,
        parameters=payload.parameters,
        symbols=payload.symbols or [],
    )
    backtest = service.create_backtest(
        meta_db,
        name=payload.name,
        strategy=strategy,
        start=payload.start_date,
        end=payload.end_date,
        initial_capital=payload.initial_capital,
        timeframe=payload.timeframe,
    )
    background_tasks.add_task(run_backtest_job, backtest.id, service)
    return BacktestRead.model_validate(backtest)


@router.get("", response_model=List[BacktestRead])
async def list_backtests(
    status: Optional[str] = Query(None, description="Filter by lifecycle status"),
    limit: int = Query(100, ge=1, le=500),
    meta_db: Session = Depends(get_db),
) -> List[BacktestRead]:
    """Most recent backtests first, optionally filtered by status."""

    if status is not None and status not in BACKTEST_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    query = meta_db.query(Backtest)
    if status is not None:
        query = query.filter(Backtest.status == status)
    rows = query.order_by(Backtest.created_at.desc(), Backtest.id.desc()).limit(limit).all()
    return [BacktestRead.model_validate(row) for row in rows]


@router.get("/{backtest_id}", response_model=BacktestRead)
async def get_backtest(
    backtest_id: int,
    meta_db: Session = Depends(get_db),
) -> BacktestRead:
    backtest = _get_backtest_or_404(meta_db, backtest_id)
    return BacktestRead.model_validate(backtest)


@router.post("/{backtest_id}/cancel", response_model=BacktestCancelResponse)
async def cancel_backtest(
    backtest_id: int,
    meta_db: Session = Depends(get_db),
    service: BacktestService = Depends(get_backtest_service),
) -> BacktestCancelResponse:
    # LookupError and InvalidStatusTransition map to 404 and 409 at app level.
    backtest = service.cancel_backtest(meta_db, backtest_id)
    return BacktestCancelResponse(
        id=backtest.id,
        status=backtest.status,
        message="Backtest cancelled successfully",
    )


@router.get("/{backtest_id}/trades", response_model=List[BacktestTradeRead])
async def get_backtest_trades(
    backtest_id: int,
    meta_db: Session = Depends(get_db),
) -> List[BacktestTradeRead]:
    backtest = _get_backtest_or_404(meta_db, backtest_id)
    trades = (backtest.results or {}).get("trades", [])
    return [BacktestTradeRead.model_validate(t) for t in trades]


@router.get("/{backtest_id}/equity", response_model=List[BacktestEquityPointRead])
async def get_backtest_equity(
    backtest_id: int,
    meta_db: Session = Depends(get_db),
) -> List[BacktestEquityPointRead]:
    backtest = _get_backtest_or_404(meta_db, backtest_id)
    return [BacktestEquityPointRead.model_validate(p) for p in backtest.equity_curve or []]

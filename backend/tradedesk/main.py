import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import get_db, init_db
from .errors import InvalidStatusTransition
from .logging_config import configure_logging
from .routers import backtests as backtests_router

logger = logging.getLogger(__name__)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidStatusTransition)
    async def _invalid_transition(_: Request, exc: InvalidStatusTransition) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(LookupError)
    async def _not_found(_: Request, exc: LookupError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})


def create_app(settings: Settings | None = None) -> FastAPI:
    """FastAPI application factory for TradeDesk."""

    _settings = settings or get_settings()
    configure_logging(_settings.log_level)

    init_db()

    app = FastAPI(title=_settings.app_name)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)

    @app.get("/health")
    async def health(db: Session = Depends(get_db)) -> dict[str, str]:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "service": "tradedesk", "environment": _settings.environment}

    app.include_router(backtests_router.router)

    logger.info("TradeDesk API ready (data provider: %s)", _settings.data_provider)
    return app


app = create_app()

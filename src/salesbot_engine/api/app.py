"""
FastAPI application
"""
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import EngineSettings
from ..core.engine import SalesBotEngine
from ..exceptions import (
    ConfigurationError, ExecutionNotFoundError, FlowNotFoundError, FlowParseError,
    FlowValidationError, InfrastructureError, LeaseUnavailableError, StateTransitionError,
)
from ..storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyExecutionRepository, SQLAlchemyFlowRepository,
    SQLAlchemyRotationCursorRepository,
)
from .middleware import RequestLoggingMiddleware
from .routers import events, executions, flows, monitoring


logger = logging.getLogger(__name__)

Hook = Callable[[], Awaitable]


def _error(status_code: int, error: str, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": str(exc), **extra},
    )


def register_exception_handlers(app: FastAPI):
    """Map engine errors to HTTP responses"""

    @app.exception_handler(FlowNotFoundError)
    async def flow_not_found(request: Request, exc: FlowNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, "flow_not_found", exc)

    @app.exception_handler(ExecutionNotFoundError)
    async def execution_not_found(request: Request, exc: ExecutionNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, "execution_not_found", exc)

    @app.exception_handler(FlowValidationError)
    async def flow_invalid(request: Request, exc: FlowValidationError):
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "flow_invalid", exc, issues=exc.issues
        )

    @app.exception_handler(FlowParseError)
    async def flow_unreadable(request: Request, exc: FlowParseError):
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "flow_parse_error", exc)

    @app.exception_handler(ConfigurationError)
    async def node_misconfigured(request: Request, exc: ConfigurationError):
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "configuration_error", exc, node_id=exc.node_id
        )

    @app.exception_handler(StateTransitionError)
    async def bad_transition(request: Request, exc: StateTransitionError):
        return _error(status.HTTP_409_CONFLICT, "invalid_state", exc)

    @app.exception_handler(LeaseUnavailableError)
    async def leased(request: Request, exc: LeaseUnavailableError):
        return _error(status.HTTP_409_CONFLICT, "execution_busy", exc)

    @app.exception_handler(InfrastructureError)
    async def unavailable(request: Request, exc: InfrastructureError):
        logger.error(f"Infrastructure failure on {request.url.path}: {exc}")
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "service_unavailable", exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None),
            },
        )


def create_app(
    engine: SalesBotEngine,
    on_startup: Optional[List[Hook]] = None,
    on_shutdown: Optional[List[Hook]] = None,
) -> FastAPI:
    """
    Build the API around an engine

    Startup hooks run before the engine recovers pending executions and
    starts its timer loop; shutdown hooks run after the loop stops.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting sales-bot engine API...")
        for hook in on_startup or []:
            await hook()
        await engine.start()
        logger.info("Sales-bot engine API started")

        yield

        logger.info("Shutting down sales-bot engine API...")
        await engine.stop()
        for hook in on_shutdown or []:
            await hook()
        logger.info("Sales-bot engine API shut down")

    app = FastAPI(
        title="Sales-Bot Flow Engine API",
        description="Runs conversational sales flows against CRM leads",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(flows.router, prefix="/api/v1/flows", tags=["flows"])
    app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])
    app.include_router(events.router, prefix="/api/v1/events", tags=["events"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])
    register_exception_handlers(app)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": "Sales-Bot Flow Engine API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health",
        }

    return app


def create_default_app(settings: Optional[EngineSettings] = None) -> FastAPI:
    """API backed by the SQL repositories configured in ``settings``"""
    settings = settings or EngineSettings.from_env()
    db_manager = DatabaseManager(settings.database_url)
    engine = SalesBotEngine(
        flow_repository=SQLAlchemyFlowRepository(db_manager),
        execution_repository=SQLAlchemyExecutionRepository(db_manager),
        rotation_repository=SQLAlchemyRotationCursorRepository(db_manager),
        settings=settings,
    )
    return create_app(engine, on_startup=[db_manager.initialize], on_shutdown=[db_manager.close])

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.api.router import api_router
from app.core.config import get_settings
from app.core.db import close_engine, get_session_factory, init_engine, initialize_database
from app.core.logging import configure_logging
from app.infra.notifier import InMemoryEventPublisher, LoggingAuditSink
from app.services.runtime import ServiceRuntime
from app.services.sweeper import QueueSweeper

settings = get_settings()
settings.validate_runtime_settings()
configure_logging(settings)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize infrastructure
    engine = init_engine()
    await initialize_database(engine)
    app.state.db_engine = engine
    app.state.event_publisher = InMemoryEventPublisher()
    app.state.runtime = ServiceRuntime.from_settings(
        settings,
        publisher=app.state.event_publisher,
        audit=LoggingAuditSink(),
    )

    sweeper = QueueSweeper(
        runtime=app.state.runtime,
        session_factory=get_session_factory(),
        interval_seconds=settings.queue_sweep_interval_seconds,
    )
    sweeper.start()
    logger.info(
        "Service started",
        app_env=settings.app_env,
        sweep_interval_seconds=settings.queue_sweep_interval_seconds,
    )

    yield

    # Graceful shutdown
    await sweeper.stop()
    await close_engine(engine)


app = FastAPI(
    title="Retail Handoff API",
    version="0.1.0",
    docs_url="/docs" if settings.app_env != "production" else None,
    redoc_url="/redoc" if settings.app_env != "production" else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


app.include_router(api_router, prefix="/api")


@app.get("/", tags=["meta"])
async def root() -> dict[str, str]:
    return {"service": "retail-handoff", "status": "ok"}

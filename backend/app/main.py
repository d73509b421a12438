"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Engine ──
from backend.app.broadcast.channels.websocket_push import WebSocketTransport
from backend.app.services.engine import BroadcastEngine, get_engine, reset_engine
from backend.app.sessions.sweeper import SessionSweeper

# ── API routers ──
from backend.app.api.v1.reports import router as report_router
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.sessions import router as session_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine on a WebSocket transport and run the session sweeper."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    engine = get_engine()
    if not isinstance(engine.transport, WebSocketTransport):
        engine = BroadcastEngine(transport=WebSocketTransport())
        reset_engine(engine)

    sweeper = SessionSweeper(engine.registry)
    app.state.sweeper = sweeper
    await sweeper.start()
    yield
    await sweeper.stop()
    reset_engine(None)
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Geofenced broadcast and crowd-verification engine. "
        "Tracks where live sessions are, verifies crowd reports by "
        "proximity-gated quorum votes, and fans alerts and report events "
        "out to every session inside a circle or polygon."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(report_router)
app.include_router(alert_router)
app.include_router(session_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "session-registry",
            "crowd-verification",
            "alert-lifecycle",
            "geofenced-broadcast",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
def health_check():
    """Deep health probe — checks all subsystems."""
    report = run_health_check(get_engine(), getattr(app.state, "sweeper", None))
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}

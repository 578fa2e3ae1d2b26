"""Main FastAPI application."""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from splitlab.config import get_settings
from splitlab.middleware.logging import LoggingMiddleware, get_logger
from splitlab.api import experiments, health, internal
from splitlab.database import engine, Base
from splitlab.services.errors import ExperimentError
from splitlab.services.notifications import WinnerBroadcaster

settings = get_settings()
logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("database_tables_verified")

    # Webhook deliveries run here so winner evaluation never waits on HTTP
    app.state.webhook_executor = ThreadPoolExecutor(
        max_workers=settings.webhook_max_workers,
        thread_name_prefix="splitlab-webhook"
    )

    yield  # App runs here

    # Shutdown
    app.state.webhook_executor.shutdown(wait=False)
    logger.info("application_shutdown", service=settings.app_name)


# Create FastAPI app
app = FastAPI(
    title="SplitLab",
    description="A/B experimentation engine: sticky assignment, metric aggregation and winner selection",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

app.state.broadcaster = WinnerBroadcaster()


@app.exception_handler(ExperimentError)
async def experiment_error_handler(request: Request, exc: ExperimentError):
    """Map service errors to their HTTP status with an {"error": message} body."""
    logger.warning(
        "experiment_request_rejected",
        code=exc.code,
        error=exc.message,
        path=request.url.path
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# CORS middleware - Allow frontend origins
allowed_origins = [
    "http://localhost:5173",  # Local development
    "http://localhost:3000",  # Alternative local port
    settings.frontend_url,     # Production frontend
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"]
)

# Logging middleware
app.add_middleware(LoggingMiddleware)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(experiments.router, tags=["experiments"])
app.include_router(internal.router, tags=["internal"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "docs": "/docs" if settings.debug else "disabled",
        "endpoints": {
            "health": "/health",
            "assignment": "GET /experiments/{code}/assignment",
            "events": "POST /experiments/{code}/events",
            "winner": "GET /experiments/{code}/winner",
            "realtime": "WS /experiments/ws"
        }
    }


# uvicorn splitlab.main:app --reload

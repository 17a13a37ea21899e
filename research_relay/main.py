import time
import logging
from contextlib import asynccontextmanager # Import for lifespan management
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from research_relay.api.routers import health, research, sessions, status, usage
from research_relay.config import settings
from research_relay.core.orchestrator import ResearchOrchestrator
from research_relay.core.providers import build_providers
from research_relay.core.router import ServiceRouter
from research_relay.errors import (
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ResearchNotReadyError,
    SessionNotFoundError,
    ValidationError,
)
from research_relay.services.context_store import SessionContextStore
from research_relay.services.cost_tracker import CostTracker
from research_relay.services.job_manager import JobManager
from research_relay.utils.logger import setup_logging
from research_relay.utils.rate_limiter import RateLimiter, build_rate_limiter

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Context manager for managing the lifespan of the FastAPI application.
    Builds the shared research components on startup and releases them on shutdown.
    """
    logger.info("Application startup...")
    app.state.job_manager = JobManager(
        max_jobs=settings.JOB_MAX_ENTRIES,
        retention_seconds=settings.JOB_RETENTION_SECONDS,
    )
    app.state.rate_limiter = build_rate_limiter(settings)
    app.state.client_rate_limiter = RateLimiter(
        default_limit=settings.CLIENT_RATE_LIMIT_REQUESTS,
        default_window_seconds=settings.CLIENT_RATE_LIMIT_SECONDS,
        max_keys=settings.RATE_LIMIT_MAX_KEYS,
    )
    app.state.cost_tracker = CostTracker()
    app.state.context_store = SessionContextStore(
        max_sessions=settings.SESSION_MAX_ENTRIES,
        ttl_seconds=settings.SESSION_TTL_SECONDS,
    )
    app.state.providers = build_providers()
    app.state.orchestrator = ResearchOrchestrator(
        job_manager=app.state.job_manager,
        rate_limiter=app.state.rate_limiter,
        providers=app.state.providers,
        router=ServiceRouter(),
        cost_tracker=app.state.cost_tracker,
        context_store=app.state.context_store,
        run_in_background=True,
    )
    yield # Application runs
    logger.info("Application shutdown...")
    await app.state.orchestrator.shutdown()
    for provider in app.state.providers.values():
        await provider.aclose()

# Create FastAPI app instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Routes research and chat requests between LLM providers, with rate limiting and pollable research jobs.",
    lifespan=lifespan # Assign the lifespan manager
)

# Add a middleware to log requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log incoming requests and their processing time.
    """
    start_time = time.time()
    logger.info(f"Incoming request: {request.method} {request.url.path}")
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(f"Request finished: {request.method} {request.url.path} with status {response.status_code} in {process_time:.4f}s")
    return response

# Domain errors that escape a router
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(InvalidTransitionError)
async def invalid_transition_error_handler(request: Request, exc: InvalidTransitionError):
    logger.error(f"Invalid job transition while handling {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(SessionNotFoundError)
async def session_not_found_error_handler(request: Request, exc: SessionNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(ResearchNotReadyError)
async def research_not_ready_error_handler(request: Request, exc: ResearchNotReadyError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    return JSONResponse(status_code=429 if exc.is_rate_limited else 502, content={"detail": str(exc)})

# Include API routers
app.include_router(health.router, prefix=settings.API_PREFIX, tags=["Health"])
app.include_router(research.router, prefix=settings.API_PREFIX, tags=["Research"])
app.include_router(sessions.router, prefix=settings.API_PREFIX, tags=["Sessions"])
app.include_router(status.router, prefix=settings.API_PREFIX, tags=["Jobs"])
app.include_router(usage.router, prefix=settings.API_PREFIX, tags=["Usage"])

@app.get("/", tags=["Root"])
async def read_root():
    """
    Root endpoint providing a welcome message.
    """
    return {"message": f"Welcome to {settings.APP_NAME}!"}

def run():
    """Console entry point: serve the API with uvicorn."""
    import uvicorn
    uvicorn.run("research_relay.main:app", host="0.0.0.0", port=8000)

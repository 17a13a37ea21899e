"""
Dependencies for FastAPI endpoints.

The shared components are created in the application lifespan and kept on
`app.state`; endpoints receive them through these getters so tests can swap
in their own instances.
"""
from fastapi import HTTPException, Request

from research_relay.core.orchestrator import ResearchOrchestrator
from research_relay.services.context_store import SessionContextStore
from research_relay.services.cost_tracker import CostTracker
from research_relay.services.job_manager import JobManager


def _component(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail=f"Service is starting up ({name} not ready).")
    return component


def get_job_manager(request: Request) -> JobManager:
    return _component(request, "job_manager")


def get_rate_limiter(request: Request):
    return _component(request, "rate_limiter")


def get_orchestrator(request: Request) -> ResearchOrchestrator:
    return _component(request, "orchestrator")


def get_cost_tracker(request: Request) -> CostTracker:
    return _component(request, "cost_tracker")


def get_context_store(request: Request) -> SessionContextStore:
    return _component(request, "context_store")


def get_providers(request: Request):
    return _component(request, "providers")


async def get_request_context(request: Request):
    """Get request context for logging"""
    return {
        "client_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "path": request.url.path,
        "method": request.method,
    }

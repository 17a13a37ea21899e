# API routers package
"""
API routers initialization
"""
from .health import router as health_router
from .research import router as research_router
from .sessions import router as sessions_router
from .status import router as status_router
from .usage import router as usage_router

__all__ = ["health_router", "research_router", "sessions_router", "status_router", "usage_router"]

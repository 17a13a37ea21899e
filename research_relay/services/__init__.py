"""
Service layer components
"""
from .job_manager import JobManager
from .cost_tracker import CostTracker
from .context_store import SessionContextStore

__all__ = ["JobManager", "CostTracker", "SessionContextStore"]

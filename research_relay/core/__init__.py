"""
Core research workflow components
"""
from .providers import AnthropicProvider, PerplexityProvider, BaseProvider, build_providers
from .router import ServiceRouter
from .orchestrator import ResearchOrchestrator
from .poller import poll_job_status

__all__ = [
    "AnthropicProvider",
    "PerplexityProvider",
    "BaseProvider",
    "build_providers",
    "ServiceRouter",
    "ResearchOrchestrator",
    "poll_job_status",
]

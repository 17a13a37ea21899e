import re
import logging
from typing import NamedTuple, Optional

from research_relay.config import settings
from research_relay.errors import ValidationError
from research_relay.models.job import ResearchOptions

logger = logging.getLogger(__name__)

SUPPORTED_SERVICES = ("claude", "perplexity")

INTERNET_ACCESS_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"current events",
        r"latest news",
        r"what happened (today|yesterday|this week|this month)",
        r"recent developments",
        r"updated information",
        r"stock (price|market)",
        r"weather",
        r"sports (results|scores)",
    )
]

DEEP_RESEARCH_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"in-depth analysis",
        r"comprehensive research",
        r"detailed (report|investigation)",
        r"academic (research|paper|study)",
        r"scholarly (articles|sources)",
        r"deep research",
    )
]


class RouteDecision(NamedTuple):
    service: str
    deep: bool
    rate_limit_key: str


class ServiceRouter:
    """
    Picks the provider for a query. An explicit `options.service` wins;
    otherwise deep research and queries that need live web data go to
    Perplexity and everything else goes to the default service.
    """

    def __init__(self, default_service: Optional[str] = None):
        self.default_service = (default_service or settings.DEFAULT_SERVICE).lower()
        if self.default_service not in SUPPORTED_SERVICES:
            raise ValueError(f"Unsupported DEFAULT_SERVICE: {self.default_service}")

    @staticmethod
    def needs_internet_access(query: str) -> bool:
        return any(pattern.search(query) for pattern in INTERNET_ACCESS_PATTERNS)

    @staticmethod
    def needs_deep_research(query: str) -> bool:
        return any(pattern.search(query) for pattern in DEEP_RESEARCH_PATTERNS)

    def route(self, query: str, options: Optional[ResearchOptions] = None) -> RouteDecision:
        options = options or ResearchOptions()
        deep = options.deep or self.needs_deep_research(query)

        if options.service:
            service = options.service.lower()
            if service not in SUPPORTED_SERVICES:
                raise ValidationError(f"Unsupported service '{options.service}'. Use one of: {', '.join(SUPPORTED_SERVICES)}")
        elif deep or self.needs_internet_access(query):
            service = "perplexity"
        else:
            service = self.default_service

        decision = RouteDecision(
            service=service,
            deep=deep,
            rate_limit_key=f"{service}-deep" if deep else service,
        )
        logger.debug(f"Routed query to {decision.service} (deep={decision.deep})")
        return decision

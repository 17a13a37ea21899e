import logging
from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Optional

from research_relay.models.job import utcnow

logger = logging.getLogger(__name__)

# USD per million tokens
DEFAULT_RATE_CARD: Dict[str, Dict[str, float]] = {
    # Perplexity models
    "sonar": {"input": 1.0, "output": 1.0},
    "sonar-pro": {"input": 3.0, "output": 15.0},
    "sonar-deep-research": {"input": 2.0, "output": 8.0},
    # Claude models
    "claude-3-haiku": {"input": 0.25, "output": 1.25},
    "claude-3-5-haiku": {"input": 0.8, "output": 4.0},
    "claude-3-sonnet": {"input": 3.0, "output": 15.0},
    "claude-3-5-sonnet": {"input": 3.0, "output": 15.0},
    "claude-3-7-sonnet": {"input": 3.0, "output": 15.0},
    "claude-3-opus": {"input": 15.0, "output": 75.0},
    # Fallback for anything unknown
    "default": {"input": 10.0, "output": 10.0},
}


def _empty_usage() -> Dict[str, Any]:
    return {"calls": 0, "tokens": {"input": 0, "output": 0, "total": 0}, "cost": 0.0}


class CostTracker:
    """
    Accumulates token usage and cost per service, model and day.

    Cached responses cost nothing; what they would have cost is counted as savings.
    """

    def __init__(self, rate_card: Optional[Dict[str, Dict[str, float]]] = None, clock: Callable[[], datetime] = utcnow):
        self.rate_card = deepcopy(rate_card or DEFAULT_RATE_CARD)
        if "default" not in self.rate_card:
            self.rate_card["default"] = DEFAULT_RATE_CARD["default"]
        self._clock = clock
        self._lock = Lock()
        self.reset()

    def reset(self):
        with self._lock:
            self._total_cost = 0.0
            self._cache_savings = 0.0
            self._services: Dict[str, Dict[str, Any]] = {}
            self._models: Dict[str, Dict[str, Any]] = {}
            self._daily: Dict[str, Dict[str, Any]] = {}

    def rate_for(self, model: str) -> Dict[str, float]:
        """Exact match first, then the longest rate card prefix (dated model ids), then the default."""
        if model in self.rate_card:
            return self.rate_card[model]
        prefixes = [name for name in self.rate_card if name != "default" and model.startswith(name)]
        if prefixes:
            return self.rate_card[max(prefixes, key=len)]
        return self.rate_card["default"]

    def track_cost(
        self,
        service: str,
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cached: bool = False,
    ) -> Dict[str, Any]:
        """Records one API call and returns its cost breakdown."""
        rate = self.rate_for(model)
        input_cost = input_tokens / 1_000_000 * rate["input"]
        output_cost = output_tokens / 1_000_000 * rate["output"]
        cost = input_cost + output_cost
        total_tokens = input_tokens + output_tokens
        day_key = self._clock().strftime("%Y-%m-%d")

        with self._lock:
            if cached:
                self._cache_savings += cost
            else:
                for bucket in (
                    self._services.setdefault(service, _empty_usage()),
                    self._models.setdefault(model, _empty_usage()),
                    self._daily.setdefault(day_key, _empty_usage()),
                ):
                    bucket["calls"] += 1
                    bucket["tokens"]["input"] += input_tokens
                    bucket["tokens"]["output"] += output_tokens
                    bucket["tokens"]["total"] += total_tokens
                    bucket["cost"] += cost
                self._total_cost += cost

        logger.debug(f"Tracked {service}/{model} call: {total_tokens} tokens, ${cost:.6f}{' (cached)' if cached else ''}")
        return {
            "service": service,
            "model": model,
            "tokens": {"input": input_tokens, "output": output_tokens, "total": total_tokens},
            "cost": 0.0 if cached else cost,
            "cached": cached,
        }

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_cost": self._total_cost,
                "cache_savings": self._cache_savings,
                "services": deepcopy(self._services),
                "models": deepcopy(self._models),
                "daily": deepcopy(self._daily),
            }

"""
Utility functions
"""
from .logger import setup_logging
from .rate_limiter import RateLimiter, RedisRateLimiter, build_rate_limiter, rate_limit
from .circuit_breaker import CircuitBreaker, CircuitState

__all__ = [
    "setup_logging",
    "RateLimiter",
    "RedisRateLimiter",
    "build_rate_limiter",
    "rate_limit",
    "CircuitBreaker",
    "CircuitState",
]

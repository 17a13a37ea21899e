import time
import logging
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

import redis
from fastapi import HTTPException, Request, status
from pydantic import BaseModel

from research_relay.config import settings
from research_relay.errors import ValidationError

logger = logging.getLogger(__name__)


class RateLimitStatus(BaseModel):
    limited: bool
    reset_time: Optional[float] = None  # epoch seconds


class RateLimitInfo(BaseModel):
    remaining: int
    reset_time: Optional[float] = None  # epoch seconds
    limit: int


@dataclass
class RateLimitWindow:
    key: str
    limit: int
    window_seconds: float
    window_start: float
    count: int = 0

    @property
    def reset_time(self) -> float:
        return self.window_start + self.window_seconds

    def expired(self, now: float) -> bool:
        return now >= self.window_start + self.window_seconds


def _validate_key(key: str):
    if not key or not isinstance(key, str) or not key.strip():
        raise ValidationError("Rate limit key must be a non-empty string.")


class RateLimiter:
    """
    Fixed-window admission control keyed by resource name.

    Windows are created lazily on first use and reset lazily: any call that
    observes `now >= window_start + window_seconds` restarts the window at
    `now` with a zero count. There is no background timer.

    The check-and-increment in `track_request` happens under a single lock
    with no awaits, so concurrent callers can never both take the last slot.
    """

    def __init__(
        self,
        default_limit: int = 60,
        default_window_seconds: float = 60.0,
        limits: Optional[Dict[str, Tuple[int, float]]] = None,
        max_keys: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        if default_limit < 1 or default_window_seconds <= 0:
            raise ValidationError("Rate limits need a positive limit and window.")
        self.default_limit = default_limit
        self.default_window_seconds = default_window_seconds
        self.max_keys = max_keys
        self._limits: Dict[str, Tuple[int, float]] = dict(limits or {})
        self._windows: "OrderedDict[str, RateLimitWindow]" = OrderedDict()
        self._clock = clock
        self._lock = Lock()

    def _config_for(self, key: str) -> Tuple[int, float]:
        return self._limits.get(key, (self.default_limit, self.default_window_seconds))

    def _window(self, key: str, now: float, create: bool) -> Optional[RateLimitWindow]:
        """Returns the live window for `key`, resetting it if it has expired. Caller holds the lock."""
        window = self._windows.get(key)
        if window is None:
            if not create:
                return None
            limit, window_seconds = self._config_for(key)
            window = RateLimitWindow(key=key, limit=limit, window_seconds=window_seconds, window_start=now)
            self._windows[key] = window
            if len(self._windows) > self.max_keys:
                evicted, _ = self._windows.popitem(last=False)
                logger.debug(f"Evicted least recently used rate limit window '{evicted}'.")
        elif window.expired(now):
            window.count = 0
            window.window_start = now
        self._windows.move_to_end(key)
        return window

    def check_limit(self, key: str) -> RateLimitStatus:
        """Read-only check. Does not consume a slot."""
        _validate_key(key)
        with self._lock:
            window = self._window(key, self._clock(), create=False)
            if window is None or window.count < window.limit:
                return RateLimitStatus(limited=False, reset_time=None)
            return RateLimitStatus(limited=True, reset_time=window.reset_time)

    def track_request(self, key: str) -> bool:
        """Admits and counts one request for `key`, or returns False if the window is full."""
        _validate_key(key)
        with self._lock:
            window = self._window(key, self._clock(), create=True)
            if window.count >= window.limit:
                logger.warning(f"Rate limit exceeded for '{key}': {window.limit} requests per {window.window_seconds:g}s")
                return False
            window.count += 1
            return True

    def get_rate_limit_info(self, key: str) -> RateLimitInfo:
        _validate_key(key)
        with self._lock:
            window = self._window(key, self._clock(), create=False)
            if window is None:
                limit, _ = self._config_for(key)
                return RateLimitInfo(remaining=limit, reset_time=None, limit=limit)
            return RateLimitInfo(
                remaining=max(0, window.limit - window.count),
                reset_time=window.reset_time,
                limit=window.limit,
            )

    def configure(self, key: str, limit: int, window_seconds: float):
        """Sets the limit for `key`. An open window adopts the new bounds; its count is capped at the new limit."""
        _validate_key(key)
        if limit < 1 or window_seconds <= 0:
            raise ValidationError("Rate limits need a positive limit and window.")
        with self._lock:
            self._limits[key] = (limit, window_seconds)
            window = self._windows.get(key)
            if window is not None:
                window.limit = limit
                window.window_seconds = window_seconds
                window.count = min(window.count, limit)
        logger.info(f"Updated rate limit for '{key}': {limit} requests per {window_seconds:g}s")

    def __len__(self) -> int:
        return len(self._windows)


# Increments only while under the limit; the first increment starts the window's TTL.
_TRACK_REQUEST_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count >= tonumber(ARGV[1]) then
    return 0
end
count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 1
"""


class RedisRateLimiter:
    """
    Same contract as RateLimiter, with windows held in Redis so several
    application instances share one budget per key. Window expiry is the key's
    TTL; check-and-increment runs as one server-side script.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        default_limit: int = 60,
        default_window_seconds: float = 60.0,
        limits: Optional[Dict[str, Tuple[int, float]]] = None,
        prefix: str = "rate_limit",
        clock: Callable[[], float] = time.time,
    ):
        self._redis_client = redis_client
        self.default_limit = default_limit
        self.default_window_seconds = default_window_seconds
        self._limits: Dict[str, Tuple[int, float]] = dict(limits or {})
        self.prefix = prefix
        self._clock = clock
        self._track_script = redis_client.register_script(_TRACK_REQUEST_SCRIPT)

    def _get_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _config_for(self, key: str) -> Tuple[int, float]:
        return self._limits.get(key, (self.default_limit, self.default_window_seconds))

    def _state(self, key: str) -> Tuple[int, Optional[float]]:
        redis_key = self._get_key(key)
        pipe = self._redis_client.pipeline()
        pipe.get(redis_key)
        pipe.pttl(redis_key)
        raw_count, ttl_ms = pipe.execute()
        if raw_count is None or ttl_ms is None or ttl_ms < 0:
            return 0, None
        return int(raw_count), self._clock() + ttl_ms / 1000.0

    def check_limit(self, key: str) -> RateLimitStatus:
        _validate_key(key)
        limit, _ = self._config_for(key)
        count, reset_time = self._state(key)
        if count >= limit and reset_time is not None:
            return RateLimitStatus(limited=True, reset_time=reset_time)
        return RateLimitStatus(limited=False, reset_time=None)

    def track_request(self, key: str) -> bool:
        _validate_key(key)
        limit, window_seconds = self._config_for(key)
        admitted = self._track_script(keys=[self._get_key(key)], args=[limit, int(window_seconds * 1000)])
        if not admitted:
            logger.warning(f"Rate limit exceeded for '{key}': {limit} requests per {window_seconds:g}s")
        return bool(admitted)

    def get_rate_limit_info(self, key: str) -> RateLimitInfo:
        _validate_key(key)
        limit, _ = self._config_for(key)
        count, reset_time = self._state(key)
        return RateLimitInfo(remaining=max(0, limit - count), reset_time=reset_time, limit=limit)

    def configure(self, key: str, limit: int, window_seconds: float):
        _validate_key(key)
        if limit < 1 or window_seconds <= 0:
            raise ValidationError("Rate limits need a positive limit and window.")
        self._limits[key] = (limit, window_seconds)
        logger.info(f"Updated rate limit for '{key}': {limit} requests per {window_seconds:g}s")


def provider_limits(config=settings) -> Dict[str, Tuple[int, float]]:
    """Per-provider limits from settings, keyed the way the service router names them."""
    return {
        "claude": (config.CLAUDE_REQUESTS_PER_MINUTE, 60.0),
        "perplexity": (config.PERPLEXITY_REQUESTS_PER_MINUTE, 60.0),
        "perplexity-deep": (config.DEEP_RESEARCH_PER_HOUR, 3600.0),
    }


def build_rate_limiter(config=settings):
    """Builds the provider rate limiter for the configured backend."""
    backend = config.RATE_LIMIT_BACKEND.lower()
    if backend == "memory":
        return RateLimiter(
            default_limit=config.DEFAULT_REQUESTS_PER_MINUTE,
            default_window_seconds=60.0,
            limits=provider_limits(config),
            max_keys=config.RATE_LIMIT_MAX_KEYS,
        )
    if backend == "redis":
        try:
            redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)
            redis_client.ping()
            logger.info("Connected to Redis successfully for rate limiting.")
        except redis.exceptions.ConnectionError as e:
            logger.error(f"Could not connect to Redis for rate limiting: {e}")
            raise ConnectionError("Failed to connect to Redis") from e
        return RedisRateLimiter(
            redis_client,
            default_limit=config.DEFAULT_REQUESTS_PER_MINUTE,
            default_window_seconds=60.0,
            limits=provider_limits(config),
        )
    raise ValueError(f"Unsupported RATE_LIMIT_BACKEND: {config.RATE_LIMIT_BACKEND}")


async def rate_limit(request: Request):
    """
    FastAPI dependency throttling API callers per client IP and endpoint path,
    using the client limiter stored on the application state.
    """
    limiter = request.app.state.client_rate_limiter
    client_ip = request.client.host if request.client else "unknown"
    key = f"client:{client_ip}:{request.url.path}"

    if not limiter.track_request(key):
        info = limiter.get_rate_limit_info(key)
        retry_after = max(1, int((info.reset_time or time.time()) - time.time()))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )

import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """
    CLOSED: requests flow through.
    OPEN: too many consecutive failures; requests are rejected.
    HALF_OPEN: the reset timeout has passed; a few trial requests are let through.
    """
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Stops calling a provider that keeps failing.

    `failure_threshold` consecutive failures open the circuit. After
    `reset_timeout` seconds it goes half-open and admits up to
    `success_threshold` trial calls; that many successes close it again,
    and any failure reopens it.

    Usage:
        if not breaker.allow_request():
            raise ...
        try:
            result = call()
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
    """
    name: str = "default"
    failure_threshold: int = 3
    reset_timeout: float = 300.0
    success_threshold: int = 2
    clock: Callable[[], float] = time.time

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    success_count: int = field(default=0, init=False)
    half_open_calls: int = field(default=0, init=False)
    opened_at: Optional[float] = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def allow_request(self) -> bool:
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self.clock() - self.opened_at < self.reset_timeout:
                    return False
                self._transition(CircuitState.HALF_OPEN, "reset timeout elapsed")
            if self.state == CircuitState.HALF_OPEN:
                if self.half_open_calls >= self.success_threshold:
                    return False
                self.half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED, "success threshold reached")

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.success_count = 0
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, "failed in half-open state")
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN, "failure threshold reached")

    def reset(self) -> None:
        with self._lock:
            self._transition(CircuitState.CLOSED, "manual reset")
            self.failure_count = 0

    def retry_after(self) -> Optional[float]:
        """Seconds until an open circuit goes half-open, or None when not open."""
        with self._lock:
            return self._retry_after()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
                "retry_after_seconds": self._retry_after(),
            }

    # Caller holds the lock.
    def _retry_after(self) -> Optional[float]:
        if self.state != CircuitState.OPEN:
            return None
        return max(0.0, self.reset_timeout - (self.clock() - self.opened_at))

    def _transition(self, state: CircuitState, reason: str):
        if state == self.state:
            return
        logger.warning(f"{self.name}: circuit {self.state.value} -> {state.value} ({reason})")
        self.state = state
        self.success_count = 0
        self.half_open_calls = 0
        self.opened_at = self.clock() if state == CircuitState.OPEN else None

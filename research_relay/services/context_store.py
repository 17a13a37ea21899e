import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, List, Optional

from research_relay.errors import SessionNotFoundError, ValidationError
from research_relay.models.job import utcnow
from research_relay.models.session import SessionContext

logger = logging.getLogger(__name__)


class SessionContextStore:
    """
    Keeps the context of each research session so follow-up questions can be
    answered from the session's research.

    A session expires `ttl_seconds` after it was last stored or updated.
    Beyond `max_sessions` the least recently updated session is dropped.
    Readers get deep copies; changes go through `store_context` and
    `update_context`.
    """

    def __init__(
        self,
        max_sessions: Optional[int] = 1000,
        ttl_seconds: Optional[float] = 86400,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_sessions = max_sessions
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: "OrderedDict[str, SessionContext]" = OrderedDict()
        self._lock = Lock()

    def store_context(self, context: SessionContext) -> SessionContext:
        """Stores `context` under its session id, replacing any earlier context for it."""
        if not context.session_id or not context.session_id.strip():
            raise ValidationError("Session id must be a non-empty string.")
        now = self._clock()
        with self._lock:
            self._prune_expired(now)
            existing = self._sessions.pop(context.session_id, None)
            stored = context.model_copy(
                update={"created_at": existing.created_at if existing else now, "updated_at": now},
                deep=True,
            )
            self._sessions[context.session_id] = stored
            if self.max_sessions and len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.debug(f"Evicted least recently updated session '{evicted}'.")
            snapshot = stored.model_copy(deep=True)
        logger.info(f"Stored context for session {context.session_id} (job: {context.job_id}).")
        return snapshot

    def get_context(self, session_id: str) -> SessionContext:
        with self._lock:
            return self._live(session_id, self._clock()).model_copy(deep=True)

    def update_context(
        self, session_id: str, updater: Callable[[SessionContext], SessionContext]
    ) -> SessionContext:
        """
        Replaces a session's context with `updater(context)`. The updater gets a
        copy and runs under the store lock, so concurrent updates never lose each other.
        """
        now = self._clock()
        with self._lock:
            current = self._live(session_id, now)
            updated = updater(current.model_copy(deep=True))
            if updated.session_id != session_id:
                raise ValidationError("A session update cannot change the session id.")
            stored = updated.model_copy(update={"created_at": current.created_at, "updated_at": now}, deep=True)
            self._sessions[session_id] = stored
            self._sessions.move_to_end(session_id)
            return stored.model_copy(deep=True)

    def delete_context(self, session_id: str) -> None:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise SessionNotFoundError(session_id)
        logger.info(f"Deleted context for session {session_id}.")

    def list_sessions(self, limit: int = 100, offset: int = 0) -> List[str]:
        """Live session ids, oldest update first."""
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative.")
        with self._lock:
            self._prune_expired(self._clock())
            return list(self._sessions)[offset:offset + limit]

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def prune_expired(self) -> int:
        with self._lock:
            return self._prune_expired(self._clock())

    # --- internals; callers hold the lock ---

    def _expired(self, context: SessionContext, now: datetime) -> bool:
        return bool(self.ttl_seconds) and now - context.updated_at >= timedelta(seconds=self.ttl_seconds)

    def _live(self, session_id: str, now: datetime) -> SessionContext:
        context = self._sessions.get(session_id)
        if context is None:
            raise SessionNotFoundError(session_id)
        if self._expired(context, now):
            del self._sessions[session_id]
            logger.info(f"Session {session_id} expired.")
            raise SessionNotFoundError(session_id)
        return context

    def _prune_expired(self, now: datetime) -> int:
        expired = [sid for sid, context in self._sessions.items() if self._expired(context, now)]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info(f"Pruned {len(expired)} expired sessions.")
        return len(expired)

import pytest

from research_relay.errors import SessionNotFoundError, ValidationError
from research_relay.models.session import FollowUpExchange, SessionContext
from research_relay.services.context_store import SessionContextStore


@pytest.fixture
def store(dt_clock):
    return SessionContextStore(max_sessions=3, ttl_seconds=3600, clock=dt_clock)


def _context(session_id="session_1", job_id="job-1"):
    return SessionContext(session_id=session_id, original_query="State of fusion research", job_id=job_id)


def test_store_and_get_context(store, dt_clock):
    store.store_context(_context())

    context = store.get_context("session_1")
    assert context.original_query == "State of fusion research"
    assert context.job_id == "job-1"
    assert context.created_at == dt_clock.now
    assert context.history == []


def test_get_returns_a_copy(store):
    store.store_context(_context())

    store.get_context("session_1").history.append(FollowUpExchange(query="q", answer="a"))

    assert store.get_context("session_1").history == []


def test_storing_again_replaces_context_but_keeps_created_at(store, dt_clock):
    store.store_context(_context(job_id="job-1"))
    created = dt_clock.now
    dt_clock.advance(60)

    store.store_context(_context(job_id="job-2"))

    context = store.get_context("session_1")
    assert context.job_id == "job-2"
    assert context.created_at == created
    assert context.updated_at == dt_clock.now


def test_update_context_applies_updater(store):
    store.store_context(_context())
    exchange = FollowUpExchange(query="What about tritium?", answer="Scarce.")

    updated = store.update_context("session_1", lambda ctx: ctx.model_copy(update={"history": ctx.history + [exchange]}))

    assert [e.query for e in updated.history] == ["What about tritium?"]
    assert store.get_context("session_1").history[0].answer == "Scarce."


def test_update_cannot_change_session_id(store):
    store.store_context(_context())
    with pytest.raises(ValidationError):
        store.update_context("session_1", lambda ctx: ctx.model_copy(update={"session_id": "other"}))


def test_unknown_session_raises(store):
    with pytest.raises(SessionNotFoundError):
        store.get_context("missing")
    with pytest.raises(SessionNotFoundError):
        store.update_context("missing", lambda ctx: ctx)
    with pytest.raises(SessionNotFoundError):
        store.delete_context("missing")


def test_sessions_expire_after_ttl_since_last_update(store, dt_clock):
    store.store_context(_context())
    dt_clock.advance(3000)
    store.update_context("session_1", lambda ctx: ctx)
    dt_clock.advance(3000)

    assert store.get_context("session_1").job_id == "job-1"

    dt_clock.advance(600)
    with pytest.raises(SessionNotFoundError):
        store.get_context("session_1")
    assert store.session_count() == 0


def test_oldest_session_is_evicted_beyond_capacity(store):
    for n in range(4):
        store.store_context(_context(session_id=f"session_{n}"))

    assert store.list_sessions() == ["session_1", "session_2", "session_3"]


def test_list_sessions_paginates_and_skips_expired(store, dt_clock):
    store.store_context(_context(session_id="old"))
    dt_clock.advance(3000)
    store.store_context(_context(session_id="a"))
    store.store_context(_context(session_id="b"))
    dt_clock.advance(700)

    assert store.list_sessions() == ["a", "b"]
    assert store.list_sessions(limit=1, offset=1) == ["b"]


def test_delete_context(store):
    store.store_context(_context())
    store.delete_context("session_1")
    assert store.list_sessions() == []


def test_empty_session_id_is_rejected(store):
    with pytest.raises(ValidationError):
        store.store_context(_context(session_id=" "))

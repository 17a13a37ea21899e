import pytest

from conftest import FakeProvider
from research_relay.errors import ProviderError
from research_relay.utils.circuit_breaker import CircuitBreaker, CircuitState


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(name="perplexity", failure_threshold=3, reset_timeout=300.0, success_threshold=2, clock=clock)


def _fail(breaker, times):
    for _ in range(times):
        assert breaker.allow_request()
        breaker.record_failure()


def test_opens_after_consecutive_failures(breaker):
    _fail(breaker, 2)
    assert breaker.state == CircuitState.CLOSED

    _fail(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert breaker.allow_request() is False


def test_success_resets_failure_count(breaker):
    _fail(breaker, 2)
    breaker.record_success()
    _fail(breaker, 2)
    assert breaker.state == CircuitState.CLOSED


def test_half_open_after_timeout_then_closes_on_successes(breaker, clock):
    _fail(breaker, 3)
    clock.advance(299)
    assert breaker.allow_request() is False
    assert breaker.retry_after() == pytest.approx(1.0)

    clock.advance(1)
    assert breaker.allow_request() is True
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.allow_request() is True
    # Only `success_threshold` trial calls are let through.
    assert breaker.allow_request() is False

    breaker.record_success()
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.allow_request() is True


def test_failure_in_half_open_reopens(breaker, clock):
    _fail(breaker, 3)
    clock.advance(300)
    assert breaker.allow_request() is True

    breaker.record_failure()

    assert breaker.state == CircuitState.OPEN
    assert breaker.retry_after() == pytest.approx(300.0)


def test_status_and_reset(breaker):
    _fail(breaker, 3)
    status = breaker.get_status()
    assert status["state"] == "open"
    assert status["failure_count"] == 3
    assert status["retry_after_seconds"] == pytest.approx(300.0)

    breaker.reset()
    assert breaker.get_status()["state"] == "closed"
    assert breaker.get_status()["retry_after_seconds"] is None


# --- Provider integration ---

@pytest.mark.asyncio
async def test_open_circuit_fails_fast_without_calling_vendor(breaker):
    provider = FakeProvider("perplexity", error=ProviderError("HTTP 500", status=500), breaker=breaker)

    for _ in range(3):
        with pytest.raises(ProviderError):
            await provider.query([{"role": "user", "content": "weather in Oslo"}])
    assert len(provider.calls) == 3

    with pytest.raises(ProviderError) as exc_info:
        await provider.query([{"role": "user", "content": "weather in Oslo"}])

    assert exc_info.value.status == 503
    assert "circuit open" in str(exc_info.value)
    assert len(provider.calls) == 3
    status = provider.get_status()
    assert status.status == "degraded"
    assert status.circuit_state == "open"
    assert status.circuit_retry_after == pytest.approx(300.0)


@pytest.mark.asyncio
async def test_vendor_rate_limits_do_not_trip_the_circuit(breaker):
    provider = FakeProvider("claude", error=ProviderError("rate limited", status=429), breaker=breaker)

    for _ in range(5):
        with pytest.raises(ProviderError):
            await provider.query([{"role": "user", "content": "Explain tides"}])

    assert breaker.state == CircuitState.CLOSED
    assert len(provider.calls) == 5


@pytest.mark.asyncio
async def test_provider_recovers_after_reset_timeout(breaker, clock):
    provider = FakeProvider("claude", error=RuntimeError("connection reset"), breaker=breaker)
    for _ in range(3):
        with pytest.raises(RuntimeError):
            await provider.query([{"role": "user", "content": "Explain tides"}])

    provider.error = None
    clock.advance(300)
    for _ in range(2):
        result = await provider.query([{"role": "user", "content": "Explain tides"}])
        assert result.content == "answer"

    assert breaker.state == CircuitState.CLOSED
    assert provider.get_status().status == "connected"

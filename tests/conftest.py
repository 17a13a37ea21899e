import pytest
from datetime import datetime, timedelta, timezone

from research_relay.core.providers import BaseProvider
from research_relay.models.job import ResearchResult, TokenUsage


class FakeProvider(BaseProvider):
    """In-memory provider that records its calls and returns a canned result or raises."""

    def __init__(self, name="claude", result=None, error=None, breaker=None):
        self.name = name
        super().__init__(api_key="test-key", model=f"{name}-test-model", placeholder_key="placeholder", breaker=breaker)
        self.result = result or ResearchResult(
            content="answer",
            citations=[],
            model="m",
            service=name,
            usage=TokenUsage(input_tokens=1000, output_tokens=500),
        )
        self.error = error
        self.calls = []

    async def _query(self, messages, options):
        self.calls.append((messages, options))
        if self.error is not None:
            raise self.error
        return self.result


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeDateTimeClock:
    """Datetime clock for the job manager and cost tracker."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 3, 23, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dt_clock():
    return FakeDateTimeClock()


@pytest.fixture
def providers():
    return {"claude": FakeProvider("claude"), "perplexity": FakeProvider("perplexity")}

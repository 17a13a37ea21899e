import pytest
from unittest.mock import AsyncMock

from research_relay.core.poller import poll_job_status
from research_relay.errors import JobFailedError, NotFoundError, PollTimeoutError
from research_relay.models.job import JobStatus, ResearchJob, ResearchRequestData, ResearchResult


def _job(status, result=None, error=None):
    return ResearchJob(
        job_id="job-1",
        status=status,
        data=ResearchRequestData(query="What is new in battery chemistry?"),
        result=result,
        error=error,
    )


class ScriptedJobSource:
    """Returns (or raises) the scripted items in order, repeating the last one."""

    def __init__(self, *items):
        self.items = list(items)
        self.calls = 0

    def get_job_status(self, job_id):
        self.calls += 1
        item = self.items[min(self.calls, len(self.items)) - 1]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.mark.asyncio
async def test_resolves_when_job_completes_on_third_check():
    result = ResearchResult(content="x", model="sonar")
    source = ScriptedJobSource(
        _job(JobStatus.QUEUED),
        _job(JobStatus.PROCESSING),
        _job(JobStatus.COMPLETED, result=result),
    )

    resolved = await poll_job_status(source, "job-1", 5, 0.01)

    assert resolved.content == "x"
    assert 3 <= source.calls <= 5


@pytest.mark.asyncio
async def test_times_out_after_exactly_max_attempts():
    source = ScriptedJobSource(_job(JobStatus.PROCESSING))
    sleep = AsyncMock()

    with pytest.raises(PollTimeoutError) as exc_info:
        await poll_job_status(source, "job-1", 3, 0.01, sleep=sleep)

    assert source.calls == 3
    assert exc_info.value.attempts == 3
    # No sleep after the final attempt.
    assert sleep.await_count == 2
    sleep.assert_awaited_with(0.01)


@pytest.mark.asyncio
async def test_failed_job_raises_with_job_error():
    source = ScriptedJobSource(_job(JobStatus.PROCESSING), _job(JobStatus.FAILED, error="Perplexity API error: HTTP 500"))

    with pytest.raises(JobFailedError) as exc_info:
        await poll_job_status(source, "job-1", 5, 0, sleep=AsyncMock())

    assert exc_info.value.error == "Perplexity API error: HTTP 500"
    assert str(exc_info.value) == "Perplexity API error: HTTP 500"
    assert source.calls == 2


@pytest.mark.asyncio
async def test_not_found_counts_as_an_attempt_and_keeps_polling():
    result = ResearchResult(content="late", model="m")
    source = ScriptedJobSource(NotFoundError("job-1"), NotFoundError("job-1"), _job(JobStatus.COMPLETED, result=result))

    resolved = await poll_job_status(source, "job-1", 3, 0, sleep=AsyncMock())

    assert resolved.content == "late"
    assert source.calls == 3


@pytest.mark.asyncio
async def test_job_never_visible_times_out():
    source = ScriptedJobSource(NotFoundError("job-1"))

    with pytest.raises(PollTimeoutError):
        await poll_job_status(source, "job-1", 4, 0, sleep=AsyncMock())

    assert source.calls == 4


@pytest.mark.asyncio
async def test_rejects_non_positive_attempt_budget():
    with pytest.raises(ValueError):
        await poll_job_status(ScriptedJobSource(_job(JobStatus.QUEUED)), "job-1", 0, 0)

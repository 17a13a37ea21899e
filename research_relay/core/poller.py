import asyncio
import logging
from typing import Any, Awaitable, Callable

from research_relay.errors import JobFailedError, NotFoundError, PollTimeoutError
from research_relay.models.job import JobStatus, ResearchResult

logger = logging.getLogger(__name__)


async def poll_job_status(
    job_source,
    job_id: str,
    max_attempts: int = 30,
    interval: float = 2.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ResearchResult:
    """
    Checks `job_source.get_job_status(job_id)` up to `max_attempts` times,
    `interval` seconds apart, until the job is terminal.

    Returns the job result when it completes, raises JobFailedError when it
    fails and PollTimeoutError when the attempts run out. A job that is not
    visible yet (NotFoundError) uses up an attempt instead of aborting, since
    job creation and polling can race.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            job = job_source.get_job_status(job_id)
        except NotFoundError:
            logger.debug(f"Job {job_id} not visible yet (attempt {attempt}/{max_attempts})")
        else:
            if job.status == JobStatus.COMPLETED:
                logger.info(f"Job {job_id} completed after {attempt} status checks.")
                return job.result
            if job.status == JobStatus.FAILED:
                logger.info(f"Job {job_id} failed after {attempt} status checks: {job.error}")
                raise JobFailedError(job_id, job.error)
            logger.debug(f"Job {job_id} is {job.status.value} ({job.progress}%), attempt {attempt}/{max_attempts}")

        if attempt < max_attempts:
            await sleep(interval)

    logger.warning(f"Gave up polling job {job_id} after {max_attempts} attempts.")
    raise PollTimeoutError(job_id, max_attempts)

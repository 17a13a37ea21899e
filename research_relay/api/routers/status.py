import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status
from research_relay.config import settings
from research_relay.core.poller import poll_job_status
from research_relay.dependencies import get_job_manager
from research_relay.errors import JobFailedError, NotFoundError, PollTimeoutError
from research_relay.models.job import ResearchResult
from research_relay.models.schemas import JobCountsResponse, JobStatusResponse
from research_relay.services.job_manager import JobManager

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/status/{job_id}", response_model=JobStatusResponse, summary="Get research job status")
async def get_job_status(job_id: str, job_manager: JobManager = Depends(get_job_manager)):
    """
    Retrieves the current status of a specific research job.
    """
    try:
        job = job_manager.get_job_status(job_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job with ID '{job_id}' not found."
        )

    logger.info(f"Retrieved status for job {job_id}: {job.status.value}")
    return JobStatusResponse(**job.model_dump())

@router.get("/status/{job_id}/wait", response_model=ResearchResult, summary="Wait for a research job to finish")
async def wait_for_job(
    job_id: str,
    max_attempts: int = Query(settings.POLL_MAX_ATTEMPTS, ge=1, le=600),
    interval: float = Query(settings.POLL_INTERVAL_SECONDS, ge=0, le=60),
    job_manager: JobManager = Depends(get_job_manager),
):
    """
    Polls the job until it completes and returns its result. A failed job
    answers 502 with the job's error; running out of attempts answers 504,
    and the job may still finish later.
    """
    try:
        return await poll_job_status(job_manager, job_id, max_attempts=max_attempts, interval=interval)
    except JobFailedError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Job '{job_id}' failed: {e}")
    except PollTimeoutError as e:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(e))

@router.get("/jobs", response_model=JobCountsResponse, summary="Count jobs by status")
async def get_job_counts(job_manager: JobManager = Depends(get_job_manager)):
    counts = job_manager.get_job_counts()
    return JobCountsResponse(total=sum(counts.values()), counts=counts)

@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a research job")
async def delete_job(job_id: str, job_manager: JobManager = Depends(get_job_manager)):
    """
    Removes a job record. A provider call still in flight for it runs to
    completion, but its outcome is discarded.
    """
    try:
        job_manager.delete_job(job_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job with ID '{job_id}' not found."
        )

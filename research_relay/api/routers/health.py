from typing import List
from fastapi import APIRouter, Depends
from research_relay.config import settings
from research_relay.dependencies import get_job_manager, get_providers
from research_relay.models.job import utcnow
from research_relay.models.schemas import HealthCheckResponse, JobStatusResponse, ServiceStatus
from research_relay.services.job_manager import JobManager

router = APIRouter()

@router.get("/health", response_model=HealthCheckResponse, summary="Perform a health check")
async def health_check():
    """
    Performs a health check on the API service.
    Returns:
        HealthCheckResponse: The current status of the service.
    """
    return HealthCheckResponse(
        status="ok",
        timestamp=utcnow(),
        version=settings.APP_VERSION
    )

@router.get("/health/jobs", response_model=List[JobStatusResponse], summary="List jobs that look stuck")
async def get_stuck_jobs(job_manager: JobManager = Depends(get_job_manager)):
    """
    Lists jobs that are not in a terminal state (completed, failed) and have
    not been updated for longer than WATCHDOG_THRESHOLD_SECONDS.
    """
    stuck_jobs = job_manager.scan_stuck_jobs(settings.WATCHDOG_THRESHOLD_SECONDS)
    return [JobStatusResponse(**job.model_dump()) for job in stuck_jobs]

@router.get("/services", response_model=List[ServiceStatus], summary="Report provider status")
async def get_services(providers=Depends(get_providers)):
    """
    Reports whether each provider has an API key configured, its model and when it was last used.
    """
    return [provider.get_status() for provider in providers.values()]

import uuid
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from research_relay.errors import InvalidTransitionError, NotFoundError, ValidationError
from research_relay.models.job import (
    JOB_TRANSITIONS,
    JobStatus,
    ResearchJob,
    ResearchRequestData,
    ResearchResult,
    utcnow,
)

logger = logging.getLogger(__name__)

_MERGEABLE_FIELDS = {"progress", "result", "error", "completed_at"}


class JobManager:
    """
    Process-lifetime registry of research jobs and the single source of truth
    for their state.

    Jobs move queued -> processing -> completed | failed and nothing else.
    Readers always get deep copies, so the stored record can only change
    through this class.
    """

    def __init__(
        self,
        max_jobs: Optional[int] = 1000,
        retention_seconds: Optional[float] = 86400,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_jobs = max_jobs
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._jobs: "OrderedDict[str, ResearchJob]" = OrderedDict()
        self._lock = Lock()

    def create_job(self, data: Union[ResearchRequestData, Dict[str, Any]]) -> ResearchJob:
        """Registers a new queued job for `data` and returns a snapshot of it."""
        request_data = self._validate_data(data)
        now = self._clock()
        job = ResearchJob(
            job_id=str(uuid.uuid4()),
            status=JobStatus.QUEUED,
            progress=0,
            data=request_data,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._prune_expired(now)
            self._jobs[job.job_id] = job
            self._evict_overflow()
            snapshot = job.model_copy(deep=True)
        logger.info(f"Job {job.job_id} created.")
        return snapshot

    def update_job_status(self, job_id: str, status: Union[JobStatus, str], **fields) -> None:
        """
        Moves a job to `status`, merging any of `progress`, `result`, `error`
        and `completed_at`. Terminal states get `completed_at` stamped when not given.
        """
        try:
            new_status = JobStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown job status: {status}")

        unknown = set(fields) - _MERGEABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id)
            if new_status not in JOB_TRANSITIONS[job.status]:
                raise InvalidTransitionError(job_id, job.status.value, new_status.value)

            # Build the updated record before storing it so a bad field leaves the job untouched.
            now = self._clock()
            changes: Dict[str, Any] = {"status": new_status, "updated_at": now}
            if "progress" in fields:
                changes["progress"] = self._validate_progress(fields["progress"])
            if "result" in fields and fields["result"] is not None:
                try:
                    changes["result"] = ResearchResult.model_validate(fields["result"])
                except PydanticValidationError as e:
                    raise ValidationError(f"Invalid job result: {e}") from e
            if "error" in fields and fields["error"] is not None:
                changes["error"] = str(fields["error"])
            if new_status.is_terminal:
                changes["completed_at"] = fields.get("completed_at") or now
                if new_status == JobStatus.COMPLETED:
                    changes["progress"] = 100

            if new_status == JobStatus.COMPLETED and "result" not in changes:
                raise ValidationError("A completed job needs a result.")
            if new_status != JobStatus.COMPLETED and "result" in changes:
                raise ValidationError("Only completed jobs carry a result.")
            if new_status != JobStatus.FAILED and "error" in changes:
                raise ValidationError("Only failed jobs carry an error.")

            self._jobs[job_id] = job.model_copy(update=changes)
        logger.debug(f"Job {job_id} updated to status: {new_status.value}")

    def update_progress(self, job_id: str, progress: int) -> None:
        """Advisory progress update. Ignored once the job is terminal."""
        progress = self._validate_progress(progress)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id)
            if job.status.is_terminal:
                logger.debug(f"Ignoring progress update for finished job {job_id}")
                return
            self._jobs[job_id] = job.model_copy(update={"progress": progress, "updated_at": self._clock()})

    def get_job_status(self, job_id: str) -> ResearchJob:
        """Returns a snapshot copy of the job."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id)
            return job.model_copy(deep=True)

    def complete_job(self, job_id: str, result: Union[ResearchResult, Dict[str, Any]]) -> None:
        self.update_job_status(job_id, JobStatus.COMPLETED, result=result, completed_at=self._clock())

    def fail_job(self, job_id: str, error: str) -> None:
        self.update_job_status(job_id, JobStatus.FAILED, error=error, completed_at=self._clock())

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            if self._jobs.pop(job_id, None) is None:
                raise NotFoundError(job_id)
        logger.info(f"Job {job_id} deleted.")

    def list_jobs(self, status: Optional[Union[JobStatus, str]] = None) -> List[ResearchJob]:
        """Snapshots of all jobs, oldest first, optionally filtered by status."""
        wanted = JobStatus(status) if status is not None else None
        with self._lock:
            return [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if wanted is None or job.status == wanted
            ]

    def job_count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def get_job_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status.value] += 1
        return counts

    def scan_stuck_jobs(self, threshold_seconds: float) -> List[ResearchJob]:
        """
        Jobs that are not in a terminal state and have not been updated
        within `threshold_seconds`.
        """
        cutoff = self._clock() - timedelta(seconds=threshold_seconds)
        stuck_jobs: List[ResearchJob] = []
        with self._lock:
            for job in self._jobs.values():
                if not job.status.is_terminal and job.updated_at < cutoff:
                    stuck_jobs.append(job.model_copy(deep=True))
        for job in stuck_jobs:
            logger.warning(
                f"Job {job.job_id} detected as stuck. "
                f"Status: {job.status.value}, last update: {job.updated_at} (older than {threshold_seconds}s)"
            )
        return stuck_jobs

    def prune_expired(self) -> int:
        """Drops terminal jobs older than the retention window. Returns how many were removed."""
        with self._lock:
            return self._prune_expired(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()

    # --- internals; callers hold the lock ---

    def _prune_expired(self, now: datetime) -> int:
        if not self.retention_seconds:
            return 0
        cutoff = now - timedelta(seconds=self.retention_seconds)
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info(f"Pruned {len(expired)} expired jobs.")
        return len(expired)

    def _evict_overflow(self):
        if not self.max_jobs or len(self._jobs) <= self.max_jobs:
            return
        # Only finished jobs are evicted; live jobs are never dropped.
        for job_id in [jid for jid, job in self._jobs.items() if job.status.is_terminal]:
            if len(self._jobs) <= self.max_jobs:
                break
            del self._jobs[job_id]
            logger.debug(f"Evicted finished job {job_id} to stay within {self.max_jobs} jobs.")
        if len(self._jobs) > self.max_jobs:
            logger.warning(f"Job registry holds {len(self._jobs)} unfinished jobs, above the {self.max_jobs} limit.")

    @staticmethod
    def _validate_data(data) -> ResearchRequestData:
        if data is None:
            raise ValidationError("Job data is required.")
        try:
            request_data = data if isinstance(data, ResearchRequestData) else ResearchRequestData.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid job data: {e}") from e
        if not request_data.query or not request_data.query.strip():
            raise ValidationError("Job data must include a non-empty query.")
        return request_data

    @staticmethod
    def _validate_progress(progress) -> int:
        if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
            raise ValidationError(f"Progress must be an integer between 0 and 100, got {progress!r}")
        return progress

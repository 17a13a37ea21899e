from enum import Enum
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Allowed status changes. Terminal states have no outgoing edges.
JOB_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class ResearchOptions(BaseModel):
    """
    Per-request options. `deep` flags a long-running research request.
    """
    deep: bool = False
    service: Optional[str] = None  # "claude" or "perplexity"; None lets the router decide
    system_prompt: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, gt=0)
    domain_filter: List[str] = []
    history: List[Dict[str, str]] = []  # prior {"role", "content"} turns
    clarifying_questions: bool = False  # deep only: ask for clarifying questions before researching


class ResearchRequestData(BaseModel):
    """
    The original request parameters of a job. Immutable after creation.
    """
    model_config = ConfigDict(frozen=True)

    query: str
    options: ResearchOptions = Field(default_factory=ResearchOptions)
    session_id: Optional[str] = None


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ResearchResult(BaseModel):
    """
    Normalized provider response.
    """
    content: str
    citations: List[str] = []
    model: str
    service: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    clarifying_questions: List[str] = []


class ResearchJob(BaseModel):
    """
    Represents one long-running or deferred research request.
    """
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(0, ge=0, le=100)
    data: ResearchRequestData
    result: Optional[ResearchResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

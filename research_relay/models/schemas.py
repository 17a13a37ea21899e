from typing import List, Optional, Dict, Any, Literal
from datetime import datetime
from pydantic import BaseModel, Field

from research_relay.models.job import ResearchOptions, ResearchResult, ResearchRequestData

# --- API Request/Response Schemas ---

class ResearchRequest(BaseModel):
    """
    Schema for the POST /research request body.
    """
    query: str = Field(
        ...,
        min_length=1,
        description="The research question or chat message.",
        examples=["What are the latest developments in solid-state batteries?"]
    )
    options: ResearchOptions = Field(
        default_factory=ResearchOptions,
        description="Routing and generation options. Set `deep` for long-running research."
    )
    session_id: Optional[str] = Field(
        None,
        description="Optional session identifier to group related requests.",
        examples=["session_1711200000000_ab12cd34"]
    )

class SubmitResult(BaseModel):
    """
    Outcome of a research submission: either the answer itself ('sync') or a
    job handle to poll ('async').
    """
    mode: Literal["sync", "async"]
    result: Optional[ResearchResult] = Field(None, description="The answer, for synchronous requests.")
    job_id: Optional[str] = Field(None, description="Job to poll, for asynchronous requests.")
    estimated_time: Optional[int] = Field(None, description="Rough seconds until the job finishes.")
    session_id: Optional[str] = Field(None, description="Session to ask follow-up questions in, once the job completes.")

class FollowUpRequest(BaseModel):
    """
    Schema for the POST /sessions/{session_id}/follow-up request body.
    """
    query: str = Field(
        ...,
        min_length=1,
        description="The follow-up question about the session's research.",
        examples=["Which of these chemistries is closest to mass production?"]
    )
    answers: Dict[str, str] = Field(
        default_factory=dict,
        description="Answers to the session's clarifying questions, keyed by question."
    )

class FollowUpResponse(BaseModel):
    """
    Answer to a follow-up question, with the sources of the research it draws on.
    """
    session_id: str
    query: str
    response: str
    citations: List[str] = Field(default_factory=list, description="Sources of the session's research.")
    model: Optional[str] = None

class JobStatusResponse(BaseModel):
    """
    Schema for the GET /status/{job_id} response body.
    """
    job_id: str = Field(..., description="Unique identifier for the research job.")
    status: str = Field(..., description="Current status of the job ('queued', 'processing', 'completed', 'failed').")
    progress: int = Field(0, description="Advisory progress, 0-100.")
    data: ResearchRequestData = Field(..., description="The original request parameters.")
    result: Optional[ResearchResult] = Field(None, description="Provider response, once completed.")
    error: Optional[str] = Field(None, description="Failure reason, once failed.")
    created_at: datetime = Field(..., description="Timestamp when the job was created.")
    updated_at: datetime = Field(..., description="Last timestamp the job changed.")
    completed_at: Optional[datetime] = Field(None, description="Timestamp when the job reached a terminal state.")

class JobCountsResponse(BaseModel):
    """
    Schema for the GET /jobs response body.
    """
    total: int
    counts: Dict[str, int]

class RateLimitInfoResponse(BaseModel):
    """
    Schema for the GET /rate-limits/{key} response body.
    """
    key: str
    limit: int
    remaining: int
    reset_time: Optional[datetime] = Field(None, description="When the current window ends, if one is open.")

class ServiceStatus(BaseModel):
    service: str
    status: str = Field(..., description="'connected', 'degraded' (circuit open) or 'disconnected' (no API key).")
    model: str
    last_used: Optional[datetime] = None
    error: Optional[str] = None
    circuit_state: str = Field("closed", description="Circuit breaker state: 'closed', 'open' or 'half_open'.")
    circuit_retry_after: Optional[float] = Field(None, description="Seconds until an open circuit lets a trial request through.")

class HealthCheckResponse(BaseModel):
    """
    Schema for the GET /health response body.
    """
    status: str = Field("ok", description="Status of the API service.")
    timestamp: datetime = Field(..., description="Current server time.")
    version: str = Field(..., description="Application version.")

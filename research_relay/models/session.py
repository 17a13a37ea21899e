from typing import Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from research_relay.models.job import ResearchOptions, utcnow


class FollowUpExchange(BaseModel):
    """
    One follow-up question asked against a session's research, with the answer given.
    """
    query: str
    answer: str
    answers: Dict[str, str] = {}  # user's answers to clarifying questions, keyed by question
    timestamp: datetime = Field(default_factory=utcnow)


class SessionContext(BaseModel):
    """
    What a research session remembers: the request that started it, the job
    carrying its research and the follow-up conversation so far.
    """
    session_id: str
    original_query: str
    job_id: Optional[str] = None
    options: ResearchOptions = Field(default_factory=ResearchOptions)
    clarifying_questions: List[str] = []
    history: List[FollowUpExchange] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

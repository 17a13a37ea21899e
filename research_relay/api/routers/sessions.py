import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, status
from research_relay.core.orchestrator import ResearchOrchestrator
from research_relay.dependencies import get_context_store, get_orchestrator
from research_relay.errors import ProviderError, ResearchNotReadyError, SessionNotFoundError
from research_relay.models.schemas import FollowUpRequest, FollowUpResponse
from research_relay.models.session import SessionContext
from research_relay.services.context_store import SessionContextStore
from research_relay.utils.rate_limiter import rate_limit

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/sessions", response_model=List[str], summary="List research sessions")
async def list_sessions(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    context_store: SessionContextStore = Depends(get_context_store),
):
    return context_store.list_sessions(limit=limit, offset=offset)

@router.get("/sessions/{session_id}", response_model=SessionContext, summary="Get a research session")
async def get_session(session_id: str, context_store: SessionContextStore = Depends(get_context_store)):
    """
    The session's original request, its job, clarifying questions and follow-up history.
    """
    try:
        return context_store.get_context(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a research session")
async def delete_session(session_id: str, context_store: SessionContextStore = Depends(get_context_store)):
    try:
        context_store.delete_context(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

@router.post(
    "/sessions/{session_id}/follow-up",
    response_model=FollowUpResponse,
    dependencies=[Depends(rate_limit)],
    summary="Ask a follow-up question about a session's research",
)
async def follow_up(
    session_id: str,
    request: FollowUpRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """
    Answers from the session's completed research. Answers 404 for an unknown
    session and 409 while its research job is not completed.
    """
    try:
        return await orchestrator.answer_follow_up(session_id, request.query, request.answers)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ResearchNotReadyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ProviderError as e:
        if e.is_rate_limited:
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
        logger.error(f"Provider error for follow-up in session {session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"The {e.service or 'provider'} service failed to answer: {e}"
        )

import logging
from fastapi import APIRouter, Depends, HTTPException, Response, status
from research_relay.core.orchestrator import ResearchOrchestrator
from research_relay.dependencies import get_orchestrator, get_request_context
from research_relay.errors import ProviderError, ValidationError
from research_relay.models.schemas import ResearchRequest, SubmitResult
from research_relay.utils.rate_limiter import rate_limit

logger = logging.getLogger(__name__)
router = APIRouter()

@router.post(
    "/research",
    response_model=SubmitResult,
    responses={202: {"model": SubmitResult, "description": "Request accepted as a job; poll its status."}},
    dependencies=[Depends(rate_limit)],
    summary="Submit a research or chat request",
)
async def submit_research(
    request: ResearchRequest,
    response: Response,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
    context: dict = Depends(get_request_context),
):
    """
    Routes the query to a provider. Short requests are answered directly (200).
    Deep research, and requests that hit a rate limit, return a job handle (202)
    to poll with GET /status/{job_id}.
    """
    logger.info(f"Received research request from {context['client_ip']}: '{request.query[:80]}'")

    try:
        result = await orchestrator.submit(request.query, request.options, session_id=request.session_id)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProviderError as e:
        logger.error(f"Provider error for research request: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"The {e.service or 'provider'} service failed to answer: {e}"
        )

    if result.mode == "async":
        response.status_code = status.HTTP_202_ACCEPTED
        logger.info(f"Research request accepted as job {result.job_id}")
    return result

from datetime import datetime, timezone
from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, status
from research_relay.dependencies import get_cost_tracker, get_rate_limiter
from research_relay.errors import ValidationError
from research_relay.models.schemas import RateLimitInfoResponse
from research_relay.services.cost_tracker import CostTracker

router = APIRouter()

@router.get("/rate-limits/{key}", response_model=RateLimitInfoResponse, summary="Get rate limit usage for a provider key")
async def get_rate_limit(key: str, rate_limiter=Depends(get_rate_limiter)):
    """
    Reports the limit, remaining requests and window end for a provider key
    such as 'claude', 'perplexity' or 'perplexity-deep'.
    """
    try:
        info = rate_limiter.get_rate_limit_info(key)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    reset_time = datetime.fromtimestamp(info.reset_time, tz=timezone.utc) if info.reset_time else None
    return RateLimitInfoResponse(key=key, limit=info.limit, remaining=info.remaining, reset_time=reset_time)

@router.get("/costs", response_model=Dict[str, Any], summary="Get API usage and cost totals")
async def get_costs(cost_tracker: CostTracker = Depends(get_cost_tracker)):
    return cost_tracker.get_stats()

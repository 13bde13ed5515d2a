"""
Internal Sync Routes

System endpoints for downstream mirrors: full due-payments refresh, event
intake from other services, and the recent propagation outcomes.
"""
import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from ..config import PropagationConfig, get_config
from ..models.ledger import PropagationTrigger, TriggerType
from ..services.propagation import PropagationDispatcher, get_dispatcher


router = APIRouter(prefix="/internal/sync", tags=["sync"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(
    x_internal_key: str = Header(...),
    config: PropagationConfig = Depends(get_config),
):
    """Verify internal API key for sync endpoints."""
    if not hmac.compare_digest(x_internal_key, config.internal_api_key):
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


class SyncEventRequest(BaseModel):
    """A mutation made elsewhere that the mirrors should pick up."""
    type: TriggerType
    user_id: Optional[str] = None
    record_id: Optional[str] = None
    previous_email: Optional[str] = None


# =============================================================================
# SYNC ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/due-payments", response_model=dict)
async def sync_due_payments(
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    _: bool = Depends(verify_internal_key),
):
    """
    Rewrite the due-payments tab from the current ledger.

    Runs inline so the caller sees the outcome; a failed sheet write is
    reported in the body, not as an HTTP error.
    """
    outcome = await dispatcher.run(PropagationTrigger(type=TriggerType.FULL_REFRESH))
    return {
        "success": outcome.success and not outcome.skipped,
        "message": f"Synced {outcome.due_payment_count or 0} due payment records",
        "count": outcome.due_payment_count or 0,
        "outcome": outcome.to_dict(),
    }


@router.post("/event", response_model=dict, status_code=202)
async def sync_event(
    request: SyncEventRequest,
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    _: bool = Depends(verify_internal_key),
):
    """Accept a change notification and propagate it in the background."""
    dispatcher.submit(PropagationTrigger(
        type=request.type,
        user_id=request.user_id,
        record_id=request.record_id,
        previous_email=request.previous_email,
    ))
    return {"accepted": True, "type": request.type.value}


@router.get("/outcomes", response_model=dict)
async def get_recent_outcomes(
    limit: int = Query(20, ge=1, le=100),
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    _: bool = Depends(verify_internal_key),
):
    """Most recent propagation outcomes, newest first."""
    outcomes = list(reversed(dispatcher.recent_outcomes))[:limit]
    return {
        "pending": dispatcher.pending,
        "count": len(outcomes),
        "outcomes": [o.to_dict() for o in outcomes],
    }

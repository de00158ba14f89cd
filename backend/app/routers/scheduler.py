"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Persists confirmation-deadline cancellations.
"""
import os
from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.orders import DeadlineSweep, NotificationDispatcher, get_dispatcher


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/deadline-sweep", response_model=dict)
async def run_deadline_sweep(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    _: bool = Depends(verify_internal_key),
):
    """
    Cancel pending orders whose confirmation deadline has passed.

    System-automatic - reads already treat these orders as cancelled;
    this makes the stored status agree.
    """
    return DeadlineSweep(db, dispatcher=dispatcher).run()

"""
Admin API Routes

Refund review. Approval cancels the order and marks its payment refunded.
"""
from enum import Enum
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import require_admin
from ..models.db_models import RefundStatus
from ..models.order_models import Actor
from ..services.orders import OrderService, NotificationDispatcher, get_dispatcher
from ..services.orders.refund_workflow import refund_to_dict


router = APIRouter(prefix="/admin", tags=["admin"])


class RefundDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class RefundDecisionRequest(BaseModel):
    """Administrator decision on a refund request."""
    action: RefundDecision = Field(..., description="approve or reject")
    note: Optional[str] = Field(None, description="Shown to the client")


@router.get("/refunds", response_model=dict)
async def list_refunds(
    status_filter: Optional[RefundStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(require_admin),
):
    refunds = OrderService(db, dispatcher=dispatcher).refunds.list_refunds(actor, status=status_filter)
    return {
        "success": True,
        "count": len(refunds),
        "refundRequests": [refund_to_dict(r) for r in refunds],
    }


@router.patch("/refunds/{refund_id}", response_model=dict)
async def decide_refund(
    refund_id: str,
    request: RefundDecisionRequest,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(require_admin),
):
    service = OrderService(db, dispatcher=dispatcher)
    if request.action == RefundDecision.APPROVE:
        refund = service.refunds.approve(refund_id, actor, note=request.note)
    else:
        refund = service.refunds.reject(refund_id, actor, note=request.note)

    return {
        "success": True,
        "message": f"Refund {refund.status.value}",
        "refundRequest": refund_to_dict(refund),
    }

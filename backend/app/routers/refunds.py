"""
Refund API Routes

Requester-side refund submission. Decisions live in the admin router.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_actor
from ..models.db_models import RefundStatus
from ..models.order_models import Actor
from ..services.orders import (
    OrderService, RefundSubmission, REFUND_REASONS, check_refund_eligibility,
    NotificationDispatcher, NotFoundError, get_dispatcher,
)
from ..services.orders.refund_workflow import refund_to_dict


router = APIRouter(prefix="/refund", tags=["refunds"])


class RefundRequestBody(BaseModel):
    """Submission produced by the refund wizard's confirm step."""
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", description="Order to refund")
    reason: str = Field(..., description="Selected reason, or the free text for 'Lainnya'")
    reason_category: Optional[str] = Field(None, alias="reasonCategory", description="Selected reason from the list")
    bank_account_id: str = Field(..., alias="bankAccountId", description="Payout destination owned by the requester")
    requested_by: str = Field(..., alias="requestedBy", description="Requesting user id")
    operation_token: str = Field(..., alias="operationToken", min_length=8,
                                 description="Client-generated token; repeats resolve to the same request")


@router.post("", response_model=dict)
async def submit_refund(
    body: RefundRequestBody,
    response: Response,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    """
    Create a refund request.

    201 for a new request, 200 when the operation token was already used
    (the original request is returned).
    """
    service = OrderService(db, dispatcher=dispatcher)
    submission = RefundSubmission(
        order_id=body.order_id,
        reason=body.reason,
        reason_category=body.reason_category,
        bank_account_id=body.bank_account_id,
        requested_by=body.requested_by,
        operation_token=body.operation_token,
    )
    refund, created = service.refunds.submit(submission, actor)
    try:
        account = service.bank_accounts.get_for_owner(refund.bank_account_id, actor.user_id)
    except NotFoundError:
        account = None  # Destination deleted after an earlier identical submission

    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return {
        "success": True,
        "message": "Permintaan refund berhasil dikirim" if created else "Permintaan refund sudah diterima",
        "refundRequest": refund_to_dict(refund, account),
    }


@router.get("", response_model=dict)
async def list_my_refunds(
    status_filter: Optional[RefundStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    refunds = OrderService(db, dispatcher=dispatcher).refunds.list_refunds(actor, status=status_filter)
    return {"success": True, "refundRequests": [refund_to_dict(r) for r in refunds]}


@router.get("/reasons", response_model=dict)
async def list_reasons():
    """Fixed reason list shown in the first wizard step."""
    return {"success": True, "reasons": REFUND_REASONS}


@router.get("/eligibility/{order_id}", response_model=dict)
async def get_eligibility(
    order_id: str,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    """Whether the refund wizard may be opened for this order."""
    service = OrderService(db, dispatcher=dispatcher)
    view = service.get_order(order_id, actor)
    eligible, reason = check_refund_eligibility(view.order)
    return {"success": True, "orderId": order_id, "eligible": eligible, "reason": reason}

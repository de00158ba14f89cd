"""
Order API Routes

Order placement, reads with live deadline evaluation, party actions and
revision requests.
"""
from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_actor, require_admin
from ..models.db_models import OrderStatus, OrderAction, ActorRole
from ..models.order_models import Actor, PackageSnapshot
from ..services.orders import OrderService, AuthorizationError, NotificationDispatcher, get_dispatcher


router = APIRouter(prefix="/orders", tags=["orders"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateOrderRequest(BaseModel):
    """Request to place an order for a gig package."""
    model_config = ConfigDict(populate_by_name=True)

    provider_id: str = Field(..., alias="providerId", description="Freelancer who owns the gig")
    title: str = Field(..., description="Gig title shown on the order")
    package_type: str = Field(default="basic", alias="packageType", description="basic, standard or premium")
    revision_limit: int = Field(..., alias="revisionLimit", ge=0, description="Revisions included in the package")
    delivery_time_days: int = Field(..., alias="deliveryTimeDays", gt=0, description="Delivery time in days")
    price: Decimal = Field(..., gt=0, description="Package price")


class OrderActionRequest(BaseModel):
    """Party action on an order."""
    model_config = ConfigDict(populate_by_name=True)

    action: OrderAction = Field(..., description="accept, reject, deliver or accept_delivery")
    expected_status: Optional[OrderStatus] = Field(
        None, alias="expectedStatus", description="Status the client last saw; 409 if it has moved on"
    )


class RevisionRequest(BaseModel):
    """Revision request from the client."""
    message: str = Field(..., description="What should be changed")


def _service(db: Session, dispatcher: NotificationDispatcher) -> OrderService:
    return OrderService(db, dispatcher=dispatcher)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict)
async def create_order(
    request: CreateOrderRequest,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    """Place an order. The package terms are snapshotted onto the order."""
    if actor.role != ActorRole.REQUESTER:
        raise AuthorizationError("Switch to your client role to place orders")

    service = _service(db, dispatcher)
    order = service.create_order(
        requester_id=actor.user_id,
        provider_id=request.provider_id,
        title=request.title,
        package=PackageSnapshot(
            revision_limit=request.revision_limit,
            delivery_time_days=request.delivery_time_days,
            price=request.price,
        ),
        package_type=request.package_type,
    )
    return {"success": True, "order": service.view(order, actor).to_dict()}


@router.get("", response_model=dict)
async def list_orders(
    status: Optional[OrderStatus] = None,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    """Orders for the acting role, each evaluated against the current time."""
    views = _service(db, dispatcher).list_orders(actor, status=status)
    return {"success": True, "count": len(views), "orders": [v.to_dict() for v in views]}


@router.get("/{order_id}", response_model=dict)
async def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    view = _service(db, dispatcher).get_order(order_id, actor)
    return {"success": True, "order": view.to_dict()}


@router.get("/{order_id}/timeline", response_model=dict)
async def get_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    """Immutable transition log for the order."""
    return {"success": True, "timeline": _service(db, dispatcher).get_timeline(order_id, actor)}


@router.post("/{order_id}/actions", response_model=dict)
async def perform_action(
    order_id: str,
    request: OrderActionRequest,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    """
    Apply accept / reject / deliver / accept_delivery.

    A 409 conflict means someone else changed the order first; the response
    carries the current status so the client can refresh.
    """
    view = _service(db, dispatcher).perform_action(
        order_id, request.action, actor, expected_status=request.expected_status
    )
    return {"success": True, "order": view.to_dict()}


@router.post("/{order_id}/revisions", response_model=dict)
async def request_revision(
    order_id: str,
    request: RevisionRequest,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    revision, view = _service(db, dispatcher).request_revision(order_id, request.message, actor)
    return {
        "success": True,
        "revision": {
            "id": revision.id,
            "sequence": revision.sequence,
            "message": revision.message,
            "createdAt": revision.created_at.isoformat() if revision.created_at else None,
        },
        "order": view.to_dict(),
    }


@router.get("/{order_id}/revisions", response_model=dict)
async def list_revisions(
    order_id: str,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(get_current_actor),
):
    revisions = _service(db, dispatcher).get_revisions(order_id, actor)
    return {
        "success": True,
        "revisions": [
            {"id": r.id, "sequence": r.sequence, "message": r.message, "requestedBy": r.requested_by}
            for r in revisions
        ],
    }


@router.post("/{order_id}/payment-confirmation", response_model=dict)
async def confirm_payment(
    order_id: str,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor: Actor = Depends(require_admin),
):
    """Mark the order paid (payment provider callback relayed by an administrator)."""
    service = _service(db, dispatcher)
    order = service.confirm_payment(order_id, actor)
    return {"success": True, "order": service.view(order, actor).to_dict()}

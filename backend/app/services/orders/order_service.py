"""
Order Service

Main orchestration for the order lifecycle.
Coordinates the state machine, deadline tracker, revision and refund
workflows, bank accounts, persistence and notifications.

AUTHORITY MODEL:
- REQUESTER: create_order, request_revision, accept_delivery, refunds
- PROVIDER: accept, reject, deliver
- ADMINISTRATOR: refund decisions, payment confirmation
- SYSTEM: deadline expiry (evaluated lazily on every read, persisted by the sweep)
"""
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    OrderDB, OrderTransitionLogDB, RevisionRequestDB,
    OrderStatus, PaymentStatus, OrderAction, ActorRole, NotificationType,
)
from ...models.order_models import (
    Actor, PackageSnapshot, DeadlineStatus, OrderDeadline, ChangeEvent, ChangeFilter, ChangeKind,
    NotificationEvent,
)
from . import deadline_tracker
from .bank_accounts import BankAccountRegistry
from .errors import (
    OrderEngineError, ValidationError, AuthorizationError, ConflictError, GuardError,
)
from .notifications import NotificationDispatcher, default_dispatcher
from .persistence import ChangeFeed, PersistenceGateway, Subscription
from .refund_workflow import RefundWorkflow
from .revision_workflow import (
    RevisionWorkflow, is_revision_disabled, remaining_revisions, revision_count_text,
)
from .state_machine import OrderStateMachine, STATUS_LABELS, effective_status

logger = logging.getLogger(__name__)


PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.10"))


def calculate_fees(price: Decimal) -> Tuple[Decimal, Decimal]:
    """Split a price into (platform_fee, provider_earning), rounded to whole units."""
    price = Decimal(str(price))
    fee = (price * PLATFORM_FEE_RATE).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return fee, price - fee


def generate_order_number(now: datetime) -> str:
    """ORD-YYYYMMDD-XXXXXX"""
    return f"ORD-{now:%Y%m%d}-{uuid4().hex[:6].upper()}"


# =============================================================================
# READ MODELS
# =============================================================================

@dataclass
class OrderView:
    """An order as seen by one actor at one instant."""
    order: OrderDB
    effective_status: OrderStatus
    confirmation: DeadlineStatus
    delivery: DeadlineStatus
    available_actions: List[OrderAction] = field(default_factory=list)
    current_deadline: Optional[OrderDeadline] = None

    @property
    def revision_disabled(self) -> bool:
        return is_revision_disabled(self.order)

    def to_dict(self) -> Dict[str, Any]:
        order = self.order
        return {
            "id": order.id,
            "orderNumber": order.order_number,
            "title": order.title,
            "packageType": order.package_type,
            "requesterId": order.requester_id,
            "providerId": order.provider_id,
            "status": self.effective_status.value,
            "statusLabel": STATUS_LABELS.get(self.effective_status),
            "storedStatus": getattr(order.status, "value", order.status),
            "paymentStatus": getattr(order.payment_status, "value", order.payment_status),
            "package": PackageSnapshot(
                revision_limit=order.revision_limit,
                delivery_time_days=order.delivery_time_days,
                price=order.price,
            ).to_dict(),
            "platformFee": str(order.platform_fee),
            "providerEarning": str(order.provider_earning),
            "revisionCount": order.revision_count,
            "revisionCountText": revision_count_text(order),
            "remainingRevisions": remaining_revisions(order),
            "revisionDisabled": self.revision_disabled,
            "confirmationDeadline": _iso(order.confirmation_deadline),
            "confirmationCountdown": {
                **self.confirmation.to_dict(),
                "label": deadline_tracker.format_remaining(self.confirmation),
            },
            "deliveryDeadline": _iso(order.delivery_deadline),
            "deliveryCountdown": {
                **self.delivery.to_dict(),
                "label": deadline_tracker.format_remaining(self.delivery),
            },
            "currentDeadline": self.current_deadline.to_dict() if self.current_deadline else None,
            "availableActions": [a.value for a in self.available_actions],
            "createdAt": _iso(order.created_at),
            "confirmedAt": _iso(order.confirmed_at),
            "deliveredAt": _iso(order.delivered_at),
            "completedAt": _iso(order.completed_at),
            "cancelledAt": _iso(order.cancelled_at),
            "cancellationReason": order.cancellation_reason,
        }


@dataclass(frozen=True)
class LiveOrderUpdate:
    """Pushed to watchers: the stored document plus its status evaluated at delivery time."""
    order_id: str
    kind: ChangeKind
    stored_status: str
    effective_status: OrderStatus
    confirmation: DeadlineStatus
    document: Dict[str, Any]


def _iso(value: Any) -> Optional[str]:
    value = deadline_tracker.as_utc(value)
    return value.isoformat() if value else None


def _now(now: Optional[datetime]) -> datetime:
    return deadline_tracker.as_utc(now) or datetime.now(timezone.utc)


# =============================================================================
# ORDER SERVICE
# =============================================================================

class OrderService:
    """
    Main service for order management.

    Usage:
        service = OrderService(db, dispatcher=dispatcher)
        order = service.create_order(requester_id, provider_id, "Logo", package)
        service.perform_action(order.id, OrderAction.ACCEPT, provider_actor)
    """

    def __init__(self, db_session: Session, dispatcher: Optional[NotificationDispatcher] = None,
                 feed: Optional[ChangeFeed] = None):
        """Initialize with database session."""
        self.db = db_session
        self.dispatcher = dispatcher if dispatcher is not None else default_dispatcher
        self.gateway = PersistenceGateway(db_session, feed)
        self.state_machine = OrderStateMachine(self.gateway, self.dispatcher)
        self.revisions = RevisionWorkflow(self.state_machine)
        self.bank_accounts = BankAccountRegistry(db_session)
        self.refunds = RefundWorkflow(self.gateway, self.bank_accounts, self.state_machine, self.dispatcher)

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_order(
        self,
        requester_id: str,
        provider_id: str,
        title: str,
        package: PackageSnapshot,
        package_type: str = "basic",
        now: Optional[datetime] = None,
    ) -> OrderDB:
        """
        Place an order. The package terms are copied onto the order and never
        read from the gig again.
        """
        now = _now(now)
        errors = {}
        if not requester_id:
            errors["requesterId"] = "required"
        if not provider_id:
            errors["providerId"] = "required"
        if requester_id and requester_id == provider_id:
            errors["providerId"] = "You cannot order your own service"
        if not (title or "").strip():
            errors["title"] = "required"
        if package.revision_limit is None or package.revision_limit < 0:
            errors["revisionLimit"] = "must be zero or more"
        if not package.delivery_time_days or package.delivery_time_days <= 0:
            errors["deliveryTimeDays"] = "must be at least one day"
        if package.price is None or Decimal(str(package.price)) <= 0:
            errors["price"] = "must be greater than zero"
        if errors:
            raise ValidationError("Order details are invalid", field_errors=errors)

        price = Decimal(str(package.price))
        fee, earning = calculate_fees(price)

        order = OrderDB(
            id=str(uuid4()),
            order_number=generate_order_number(now),
            requester_id=requester_id,
            provider_id=provider_id,
            title=title.strip(),
            package_type=package_type,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            revision_limit=package.revision_limit,
            delivery_time_days=package.delivery_time_days,
            price=price,
            platform_fee=fee,
            provider_earning=earning,
            revision_count=0,
            confirmation_deadline=deadline_tracker.calculate_confirmation_deadline(now),
            created_at=now,
            updated_at=now,
        )
        log_entry = OrderTransitionLogDB(
            id=str(uuid4()),
            order_id=order.id,
            from_status=None,
            to_status=OrderStatus.PENDING,
            action="create",
            actor_role=ActorRole.REQUESTER,
            actor_id=requester_id,
            created_at=now,
            event_metadata={"package": package.to_dict()},
        )

        order = self.gateway.insert_order(order, log_entry, now=now)
        logger.info(f"Order {order.order_number} placed by {requester_id} with {provider_id}")

        self.dispatcher.dispatch(NotificationEvent(
            type=NotificationType.ORDER_STATUS,
            target_user_id=provider_id,
            order_id=order.id,
            new_status=OrderStatus.PENDING,
        ))
        return order

    def confirm_payment(self, order_id: str, actor: Actor, now: Optional[datetime] = None) -> OrderDB:
        """
        Record that the payment provider settled the order.

        AUTHORITY: ADMINISTRATOR or SYSTEM (payment callback).
        """
        now = _now(now)
        if actor.role not in (ActorRole.ADMINISTRATOR, ActorRole.SYSTEM):
            raise AuthorizationError("Only the payment callback can confirm payment")

        order = self.gateway.get_order(order_id)
        if order.payment_status != PaymentStatus.PENDING:
            raise GuardError(
                f"Payment is already {order.payment_status.value}",
                current_status=order.status, rule="payment_not_pending",
            )

        order = self.gateway.conditional_update(
            order_id=order.id,
            expected_status=order.status,
            values={"payment_status": PaymentStatus.PAID, "paid_at": now, "updated_at": now},
            extra_conditions=[OrderDB.payment_status == PaymentStatus.PENDING],
            change_kind=ChangeKind.PAYMENT_CHANGED,
            now=now,
        )
        logger.info(f"Payment confirmed for order {order.id}")

        self.dispatcher.dispatch(NotificationEvent(
            type=NotificationType.PAYMENT,
            target_user_id=order.provider_id,
            order_id=order.id,
            new_status=order.status,
        ))
        return order

    # =========================================================================
    # READS
    # =========================================================================

    def get_order(self, order_id: str, actor: Actor, now: Optional[datetime] = None) -> OrderView:
        """
        Fresh read of one order.

        A lapsed confirmation deadline is persisted as a cancellation before
        the view is returned.
        """
        now = _now(now)
        order = self.gateway.get_order(order_id)
        self._ensure_can_view(order, actor)
        order = self.state_machine.settle_deadline(order, now)
        return self.view(order, actor, now)

    def list_orders(self, actor: Actor, status: Optional[OrderStatus] = None,
                    now: Optional[datetime] = None) -> List[OrderView]:
        """Orders where the actor is the party for their role; administrators see all."""
        now = _now(now)
        if actor.role == ActorRole.REQUESTER:
            orders = self.gateway.list_orders(requester_id=actor.user_id)
        elif actor.role == ActorRole.PROVIDER:
            orders = self.gateway.list_orders(provider_id=actor.user_id)
        elif actor.role in (ActorRole.ADMINISTRATOR, ActorRole.SYSTEM):
            orders = self.gateway.list_orders()
        else:
            raise AuthorizationError("Unknown role")

        views = [self.view(order, actor, now) for order in orders]
        if status is not None:
            views = [v for v in views if v.effective_status == status]
        return views

    def view(self, order: OrderDB, actor: Actor, now: Optional[datetime] = None) -> OrderView:
        now = _now(now)
        status = self.state_machine.effective_status(order, now)
        # Only the revision deadline needs the request rows
        revisions = self.gateway.list_revisions(order.id) if status == OrderStatus.IN_REVISION else []
        return OrderView(
            order=order,
            effective_status=status,
            confirmation=deadline_tracker.evaluate(order.confirmation_deadline, now),
            delivery=deadline_tracker.evaluate(order.delivery_deadline, now),
            available_actions=self.state_machine.available_actions(order, actor.role, now),
            current_deadline=deadline_tracker.order_deadline(order, revisions, now, status=status),
        )

    def get_revisions(self, order_id: str, actor: Actor) -> List[RevisionRequestDB]:
        order = self.gateway.get_order(order_id)
        self._ensure_can_view(order, actor)
        return self.gateway.list_revisions(order_id)

    def get_timeline(self, order_id: str, actor: Actor) -> List[Dict[str, Any]]:
        order = self.gateway.get_order(order_id)
        self._ensure_can_view(order, actor)
        return [
            {
                "fromStatus": entry.from_status.value if entry.from_status else None,
                "toStatus": entry.to_status.value,
                "action": entry.action,
                "actorRole": entry.actor_role.value,
                "actorId": entry.actor_id,
                "createdAt": _iso(entry.created_at),
            }
            for entry in self.gateway.get_transition_log(order_id)
        ]

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def perform_action(self, order_id: str, action: Any, actor: Actor,
                       now: Optional[datetime] = None,
                       expected_status: Optional[OrderStatus] = None) -> OrderView:
        """
        Apply a party's action (accept, reject, deliver, accept_delivery).

        expected_status is the status the caller last saw. If the stored
        status differs, nothing is written and ConflictError carries the
        current one. On ConflictError the caller shows the latest state; the
        action is not retried automatically.
        """
        now = _now(now)
        try:
            requested = OrderAction(getattr(action, "value", action))
        except ValueError:
            raise ValidationError(f"Unknown action '{action}'", field_errors={"action": "unknown"})

        if requested == OrderAction.REQUEST_REVISION:
            raise ValidationError("Revision requests need a message", field_errors={"message": "required"})
        if requested == OrderAction.REFUND_APPROVED:
            raise ValidationError("Refunds are approved through the refund review")

        order = self.gateway.get_order(order_id)
        if expected_status is not None and OrderStatus(expected_status) != order.status:
            logger.info(
                f"Stale {requested.value} on order {order_id}: "
                f"expected {OrderStatus(expected_status).value}, stored {order.status.value}"
            )
            raise ConflictError(
                "This order was changed by someone else. Showing the latest version.",
                order_id=order_id, expected_status=expected_status, current_status=order.status,
            )
        order = self.state_machine.apply(order, requested, actor, now)
        return self.view(order, actor, now)

    def request_revision(self, order_id: str, message: str, actor: Actor,
                         now: Optional[datetime] = None) -> Tuple[RevisionRequestDB, OrderView]:
        now = _now(now)
        order = self.gateway.get_order(order_id)
        revision = self.revisions.request(order, message, actor, now)
        order = self.gateway.get_order(order_id)
        return revision, self.view(order, actor, now)

    # =========================================================================
    # LIVE UPDATES
    # =========================================================================

    def watch(self, change_filter: ChangeFilter, on_update: Callable[[LiveOrderUpdate], None],
              clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> Subscription:
        """
        Push every acknowledged change matching the filter to on_update.

        Each update carries the status evaluated at delivery time, so a
        pending order past its deadline arrives as cancelled.
        """
        def deliver(event: ChangeEvent) -> None:
            document = event.document
            now = clock()
            on_update(LiveOrderUpdate(
                order_id=event.order_id,
                kind=event.kind,
                stored_status=document["status"],
                effective_status=effective_status(document["status"], document["confirmationDeadline"], now),
                confirmation=deadline_tracker.evaluate(document["confirmationDeadline"], now),
                document=document,
            ))

        return self.gateway.subscribe(change_filter, deliver)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _ensure_can_view(self, order: OrderDB, actor: Actor) -> None:
        if actor.role in (ActorRole.ADMINISTRATOR, ActorRole.SYSTEM):
            return
        if actor.user_id not in (order.requester_id, order.provider_id):
            raise AuthorizationError("You are not a party to this order")


# =============================================================================
# DEADLINE SWEEP (SYSTEM-AUTHORITATIVE)
# =============================================================================
#
# Reads already treat lapsed orders as cancelled. The sweep persists those
# cancellations for orders nobody has opened, so lists and reports agree.
#
# =============================================================================

class DeadlineSweep:
    """
    Persists confirmation-deadline cancellations.

    AUTHORITY: SYSTEM - called from the internal scheduler endpoint.
    """

    def __init__(self, db_session: Session, dispatcher: Optional[NotificationDispatcher] = None):
        self.service = OrderService(db_session, dispatcher=dispatcher)

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = _now(now)
        processed = []
        skipped = []
        errors = []

        for order in self.service.gateway.find_expired_pending(now):
            try:
                self.service.state_machine.apply(order, OrderAction.DEADLINE_TICK, Actor.system(), now)
                processed.append(order.id)
            except ConflictError as e:
                skipped.append({"order_id": e.order_id, "current_status": getattr(e.current_status, "value", e.current_status)})
            except OrderEngineError as e:
                errors.append({"order_id": order.id, "error": e.message})

        if processed or errors:
            logger.info(f"Deadline sweep: {len(processed)} cancelled, {len(skipped)} skipped, {len(errors)} errors")

        return {
            "run_date": now.isoformat(),
            "cancelled": len(processed),
            "skipped": len(skipped),
            "errors": len(errors),
            "details": {
                "cancelled": processed,
                "skipped": skipped,
                "errors": errors,
            },
        }

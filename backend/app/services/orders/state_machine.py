"""
Order State Machine

Canonical order status, the transition table and guard evaluation.

AUTHORITY MODEL:
Each transition names exactly one actor role allowed to invoke it:
- PROVIDER: accept, reject, deliver
- REQUESTER: request_revision, accept_delivery
- ADMINISTRATOR: refund_approved
- SYSTEM: deadline_tick (lazy, evaluated on read)

Every committed transition is a conditional write keyed on the status the
caller observed, is logged immutably, and emits one notification to the
counterparty.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import or_

from ...models.db_models import (
    OrderDB, OrderTransitionLogDB,
    OrderStatus, PaymentStatus, OrderAction, ActorRole, NotificationType,
)
from ...models.order_models import Actor, ChangeKind, NotificationEvent
from . import deadline_tracker
from .errors import (
    GuardError, DeadlineExpiredError, RevisionLimitError,
    AuthorizationError, ConflictError, OrderEngineError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION TABLE
# =============================================================================
#
# (from_status, action) -> rule
# Anything not listed is rejected with a GuardError naming the status and action.
#
# =============================================================================

@dataclass(frozen=True)
class TransitionRule:
    to_status: OrderStatus
    actor: ActorRole
    guard: Optional[str]   # Named guard evaluated before the write
    notify: str            # Which party is told: "requester" | "provider"


TRANSITIONS: Dict[Tuple[OrderStatus, OrderAction], TransitionRule] = {
    (OrderStatus.PENDING, OrderAction.ACCEPT):
        TransitionRule(OrderStatus.ACTIVE, ActorRole.PROVIDER, "confirmation_deadline_open", "requester"),
    (OrderStatus.PENDING, OrderAction.REJECT):
        TransitionRule(OrderStatus.CANCELLED, ActorRole.PROVIDER, None, "requester"),
    (OrderStatus.PENDING, OrderAction.DEADLINE_TICK):
        TransitionRule(OrderStatus.CANCELLED, ActorRole.SYSTEM, "confirmation_deadline_expired", "requester"),
    (OrderStatus.ACTIVE, OrderAction.DELIVER):
        TransitionRule(OrderStatus.DELIVERED, ActorRole.PROVIDER, None, "requester"),
    (OrderStatus.DELIVERED, OrderAction.REQUEST_REVISION):
        TransitionRule(OrderStatus.IN_REVISION, ActorRole.REQUESTER, "revision_allowance", "provider"),
    (OrderStatus.DELIVERED, OrderAction.ACCEPT_DELIVERY):
        TransitionRule(OrderStatus.COMPLETED, ActorRole.REQUESTER, None, "provider"),
    (OrderStatus.IN_REVISION, OrderAction.DELIVER):
        TransitionRule(OrderStatus.DELIVERED, ActorRole.PROVIDER, None, "requester"),
    (OrderStatus.PENDING, OrderAction.REFUND_APPROVED):
        TransitionRule(OrderStatus.CANCELLED, ActorRole.ADMINISTRATOR, "payment_paid", "provider"),
    (OrderStatus.AWAITING_CONFIRMATION, OrderAction.REFUND_APPROVED):
        TransitionRule(OrderStatus.CANCELLED, ActorRole.ADMINISTRATOR, "payment_paid", "provider"),
    (OrderStatus.ACTIVE, OrderAction.REFUND_APPROVED):
        TransitionRule(OrderStatus.CANCELLED, ActorRole.ADMINISTRATOR, "payment_paid", "provider"),
}

TERMINAL_STATES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

STATUS_LABELS = {
    OrderStatus.PENDING: "Menunggu Konfirmasi",
    OrderStatus.AWAITING_CONFIRMATION: "Menunggu Konfirmasi",
    OrderStatus.ACTIVE: "Sedang Dikerjakan",
    OrderStatus.IN_REVISION: "Dalam Revisi",
    OrderStatus.DELIVERED: "Review Client",
    OrderStatus.COMPLETED: "Selesai",
    OrderStatus.CANCELLED: "Dibatalkan",
}


def _coerce_status(value: Any) -> Optional[OrderStatus]:
    try:
        return OrderStatus(getattr(value, "value", value))
    except ValueError:
        return None


def _coerce_action(value: Any) -> Optional[OrderAction]:
    try:
        return OrderAction(getattr(value, "value", value))
    except ValueError:
        return None


def effective_status(status: Any, confirmation_deadline: Any, now: datetime) -> OrderStatus:
    """
    Status an order is treated as having right now.

    A pending order whose confirmation deadline has lapsed is logically
    cancelled even before the stored status is rewritten.
    """
    stored = _coerce_status(status)
    if stored == OrderStatus.PENDING and deadline_tracker.evaluate(confirmation_deadline, now).expired:
        return OrderStatus.CANCELLED
    return stored


def ensure_party(order: Any, actor: Actor) -> None:
    """The acting user must be the order's party for the role they act in."""
    if actor.role == ActorRole.REQUESTER and actor.user_id != order.requester_id:
        raise AuthorizationError("Only the client who placed this order can do that")
    if actor.role == ActorRole.PROVIDER and actor.user_id != order.provider_id:
        raise AuthorizationError("Only the freelancer assigned to this order can do that")


# =============================================================================
# STATE MACHINE
# =============================================================================

class OrderStateMachine:
    """
    Deterministic state machine for the order lifecycle.

    transition() is pure: it validates and returns the target status.
    apply() validates, commits through the gateway with a conditional write,
    and notifies the counterparty.
    """

    def __init__(self, gateway=None, dispatcher=None):
        self.gateway = gateway
        self.dispatcher = dispatcher

    # -------------------------------------------------------------------------
    # Pure evaluation
    # -------------------------------------------------------------------------

    def get_rule(self, status: OrderStatus, action: OrderAction) -> Optional[TransitionRule]:
        return TRANSITIONS.get((status, action))

    def is_terminal_state(self, status: OrderStatus) -> bool:
        return _coerce_status(status) in TERMINAL_STATES

    def effective_status(self, order: Any, now: datetime) -> OrderStatus:
        return effective_status(order.status, order.confirmation_deadline, now)

    def transition(self, order: Any, action: Any, actor_role: ActorRole, now: datetime) -> OrderStatus:
        """
        Validate a transition and return the new status.

        Raises GuardError (or a subclass) when the table or a guard forbids it,
        AuthorizationError when the role does not match the table.
        """
        requested = _coerce_action(action)
        current = _coerce_status(order.status)

        if requested is None:
            raise GuardError(f"Unknown action '{action}'", current_status=current, action=action,
                             rule="unknown_action")
        if current is None:
            raise GuardError(f"Order has an unknown status '{order.status}'", current_status=order.status,
                             action=requested, rule="unknown_status")

        if current in TERMINAL_STATES:
            raise GuardError(
                f"Order is already {current.value}; no further changes are possible",
                current_status=current, action=requested, rule="terminal_state",
            )

        # Lazily expired orders are cancelled going forward; only the tick may move them.
        logical = self.effective_status(order, now)
        if logical != current and requested != OrderAction.DEADLINE_TICK:
            raise DeadlineExpiredError(
                "The confirmation deadline expired; the order is cancelled",
                current_status=current, action=requested, rule="deadline_expired",
            )

        rule = self.get_rule(current, requested)
        if rule is None:
            raise GuardError(
                f"Cannot {requested.value.replace('_', ' ')} an order that is {current.value}",
                current_status=current, action=requested, rule="transition_not_allowed",
            )

        if actor_role != rule.actor:
            role = getattr(actor_role, "value", actor_role)
            raise AuthorizationError(
                f"'{requested.value}' can only be performed by the {rule.actor.value}, not the {role}",
                current_status=current.value, action=requested.value,
            )

        self._check_guard(rule.guard, order, current, requested, now)
        return rule.to_status

    def can_transition(self, order: Any, action: Any, actor_role: ActorRole,
                       now: datetime) -> Tuple[bool, Optional[str]]:
        """
        Check if a transition is allowed.

        Returns (allowed, reason)
        """
        try:
            self.transition(order, action, actor_role, now)
        except OrderEngineError as exc:
            return False, exc.message
        return True, None

    def available_actions(self, order: Any, actor_role: ActorRole, now: datetime) -> List[OrderAction]:
        """Actions this role could perform right now (guards included)."""
        current = _coerce_status(order.status)
        actions = []
        for (state, action), rule in TRANSITIONS.items():
            if state != current or rule.actor != actor_role:
                continue
            if self.can_transition(order, action, actor_role, now)[0]:
                actions.append(action)
        return actions

    def _check_guard(self, guard: Optional[str], order: Any, current: OrderStatus,
                     action: OrderAction, now: datetime) -> None:
        if guard is None:
            return

        if guard == "confirmation_deadline_open":
            if deadline_tracker.evaluate(order.confirmation_deadline, now).expired:
                raise DeadlineExpiredError(
                    "The confirmation deadline expired; the order can no longer be accepted",
                    current_status=current, action=action, rule="deadline_expired",
                )

        elif guard == "confirmation_deadline_expired":
            if not deadline_tracker.evaluate(order.confirmation_deadline, now).expired:
                raise GuardError(
                    "The confirmation deadline has not expired yet",
                    current_status=current, action=action, rule="deadline_not_expired",
                )

        elif guard == "revision_allowance":
            if order.completed_at is not None:
                raise GuardError(
                    "The delivery was already accepted as completed",
                    current_status=current, action=action, rule="already_completed",
                )
            if (order.revision_count or 0) >= order.revision_limit:
                raise RevisionLimitError(
                    f"Revision limit reached ({order.revision_count}/{order.revision_limit})",
                    current_status=current, action=action, rule="revision_limit_reached",
                )

        elif guard == "payment_paid":
            if _payment(order) != PaymentStatus.PAID:
                raise GuardError(
                    "A refund can only be approved for a paid order",
                    current_status=current, action=action, rule="payment_not_paid",
                )

    def side_effects(self, order: Any, action: OrderAction, to_status: OrderStatus,
                     now: datetime) -> Dict[str, Any]:
        """Field values written together with the status change."""
        values: Dict[str, Any] = {"status": to_status, "updated_at": now}

        if to_status == OrderStatus.ACTIVE:
            values["confirmed_at"] = now
            values["delivery_deadline"] = deadline_tracker.calculate_delivery_deadline(
                now, order.delivery_time_days
            )
        elif to_status == OrderStatus.DELIVERED:
            values["delivered_at"] = now
        elif to_status == OrderStatus.COMPLETED and order.completed_at is None:
            values["completed_at"] = now
        elif to_status == OrderStatus.CANCELLED:
            values["cancelled_at"] = now
            if action == OrderAction.DEADLINE_TICK:
                values["cancellation_reason"] = "Freelancer did not confirm before the deadline"
            elif action == OrderAction.REJECT:
                values["cancellation_reason"] = "Rejected by freelancer"
            elif action == OrderAction.REFUND_APPROVED:
                values["cancellation_reason"] = "Refund approved"

        return values

    def write_conditions(self, action: OrderAction, now: datetime) -> List[Any]:
        """Commit-time predicates re-checking time guards against stored data."""
        if action == OrderAction.ACCEPT:
            return [or_(OrderDB.confirmation_deadline.is_(None), OrderDB.confirmation_deadline > now)]
        if action == OrderAction.DEADLINE_TICK:
            return [OrderDB.confirmation_deadline.isnot(None), OrderDB.confirmation_deadline <= now]
        if action == OrderAction.REFUND_APPROVED:
            return [OrderDB.payment_status == PaymentStatus.PAID]
        return []

    # -------------------------------------------------------------------------
    # Committing
    # -------------------------------------------------------------------------

    def apply(
        self,
        order: OrderDB,
        action: Any,
        actor: Actor,
        now: Optional[datetime] = None,
        extra_values: Optional[Dict[str, Any]] = None,
        extra_conditions: Iterable[Any] = (),
        extra_rows: Iterable[Any] = (),
        change_kind: ChangeKind = ChangeKind.STATUS_CHANGED,
    ) -> OrderDB:
        """
        Execute a transition.

        The write only applies if the stored status still equals the status
        this caller observed; otherwise ConflictError is raised and nothing
        is written. Returns the freshly re-read order.
        """
        now = deadline_tracker.as_utc(now) or datetime.now(timezone.utc)
        requested = _coerce_action(action)
        from_status = _coerce_status(order.status)

        if actor.role in (ActorRole.REQUESTER, ActorRole.PROVIDER):
            ensure_party(order, actor)

        try:
            to_status = self.transition(order, requested or action, actor.role, now)
        except GuardError as exc:
            logger.warning(f"Rejected {getattr(action, 'value', action)} on order {order.id}: {exc.message}")
            raise

        values = self.side_effects(order, requested, to_status, now)
        values.update(extra_values or {})

        log_entry = OrderTransitionLogDB(
            id=str(uuid4()),
            order_id=order.id,
            from_status=from_status,
            to_status=to_status,
            action=requested.value,
            actor_role=actor.role,
            actor_id=actor.user_id,
            created_at=now,
            event_metadata={"trigger": requested.value},
        )

        conditions = self.write_conditions(requested, now) + list(extra_conditions)

        try:
            updated = self.gateway.conditional_update(
                order_id=order.id,
                expected_status=from_status,
                values=values,
                extra_conditions=conditions,
                extra_rows=[log_entry, *extra_rows],
                change_kind=change_kind,
                now=now,
            )
        except ConflictError:
            logger.warning(
                f"Conflict applying {requested.value} to order {order.id}: "
                f"expected {from_status.value}, store has moved on"
            )
            raise

        logger.info(f"Order {order.id}: {from_status.value} -> {to_status.value} ({requested.value} by {actor.role.value})")

        self._notify(updated, requested, from_status, to_status)
        return updated

    def settle_deadline(self, order: OrderDB, now: Optional[datetime] = None) -> OrderDB:
        """
        Persist a lapsed confirmation deadline as a cancellation.

        AUTHORITY: SYSTEM. Called on read; losing the race to another writer
        just means the order already moved, so the fresh copy is returned.
        """
        now = deadline_tracker.as_utc(now) or datetime.now(timezone.utc)
        if self.effective_status(order, now) == _coerce_status(order.status):
            return order

        try:
            return self.apply(order, OrderAction.DEADLINE_TICK, Actor.system(), now)
        except ConflictError:
            return self.gateway.get_order(order.id)

    def _notify(self, order: OrderDB, action: OrderAction, old: OrderStatus, new: OrderStatus) -> None:
        if self.dispatcher is None:
            return
        rule = self.get_rule(old, action)
        target = order.requester_id if rule.notify == "requester" else order.provider_id
        self.dispatcher.dispatch(NotificationEvent(
            type=NotificationType.ORDER_STATUS,
            target_user_id=target,
            order_id=order.id,
            old_status=old,
            new_status=new,
        ))


def _payment(order: Any) -> Optional[PaymentStatus]:
    try:
        return PaymentStatus(getattr(order.payment_status, "value", order.payment_status))
    except ValueError:
        return None

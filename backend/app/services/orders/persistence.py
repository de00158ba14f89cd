"""
Persistence Gateway

Thin layer between the workflows and the order store:
- point reads that always hit the store (no cached order state)
- conditional status writes: applied only if the stored status still equals
  the status the caller observed
- idempotent refund-request creation keyed by operation token
- an in-process change feed pushed to subscribers after each acknowledged write

Driver failures surface as TransportError; nothing is partially applied.
"""
import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import (
    OrderDB, RefundRequestDB, RevisionRequestDB, OrderTransitionLogDB,
    OrderStatus, RefundStatus,
)
from ...models.order_models import ChangeEvent, ChangeFilter, ChangeKind
from . import deadline_tracker
from .errors import AuthorizationError, ConflictError, NotFoundError, TransportError, ValidationError

logger = logging.getLogger(__name__)


@contextmanager
def acknowledged(db: Session):
    """
    Commit the block as one transaction.

    Rolls back on any failure. Driver-level errors become TransportError;
    IntegrityError propagates unchanged so callers can resolve duplicates.
    """
    try:
        yield db
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except DBAPIError as e:
        db.rollback()
        logger.error(f"Store unavailable: {e}")
        raise TransportError("The order store is unavailable. Nothing was changed; please retry.") from e
    except Exception:
        db.rollback()
        raise


def _iso(value: Any) -> Optional[str]:
    value = deadline_tracker.as_utc(value)
    return value.isoformat() if value else None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def order_to_document(order: OrderDB) -> Dict[str, Any]:
    """Stored shape of an order as pushed to change-feed subscribers."""
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "requesterId": order.requester_id,
        "providerId": order.provider_id,
        "title": order.title,
        "packageType": order.package_type,
        "status": _enum_value(order.status),
        "paymentStatus": _enum_value(order.payment_status),
        "package": {
            "revisionLimit": order.revision_limit,
            "deliveryTimeDays": order.delivery_time_days,
            "price": str(order.price),
        },
        "platformFee": str(order.platform_fee),
        "providerEarning": str(order.provider_earning),
        "revisionCount": order.revision_count,
        "confirmationDeadline": _iso(order.confirmation_deadline),
        "deliveryDeadline": _iso(order.delivery_deadline),
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
        "paidAt": _iso(order.paid_at),
        "confirmedAt": _iso(order.confirmed_at),
        "deliveredAt": _iso(order.delivered_at),
        "completedAt": _iso(order.completed_at),
        "cancelledAt": _iso(order.cancelled_at),
        "cancellationReason": order.cancellation_reason,
    }


# =============================================================================
# CHANGE FEED
# =============================================================================

class Subscription:
    """
    Handle returned by subscribe().

    With a callback, events are pushed as they are published. Without one,
    they queue up and are drained by iterating the subscription.
    """

    def __init__(self, feed: "ChangeFeed", change_filter: ChangeFilter,
                 callback: Optional[Callable[[ChangeEvent], None]] = None):
        self._feed = feed
        self.change_filter = change_filter
        self.callback = callback
        self._events: Deque[ChangeEvent] = deque()
        self.active = True

    def deliver(self, event: ChangeEvent) -> None:
        if not self.active or not self.change_filter.matches(event):
            return
        if self.callback is None:
            self._events.append(event)
            return
        try:
            self.callback(event)
        except Exception:
            logger.exception(f"Change subscriber failed for order {event.order_id}")

    def __iter__(self) -> Iterator[ChangeEvent]:
        while self._events:
            yield self._events.popleft()

    def drain(self) -> List[ChangeEvent]:
        return list(self)

    def unsubscribe(self) -> None:
        self.active = False
        self._events.clear()
        self._feed.remove(self)


class ChangeFeed:
    """Fan-out of acknowledged order writes to live subscribers."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, change_filter: Optional[ChangeFilter] = None,
                  callback: Optional[Callable[[ChangeEvent], None]] = None) -> Subscription:
        subscription = Subscription(self, change_filter or ChangeFilter(), callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscriptions)
        for subscription in subscribers:
            subscription.deliver(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


# Shared by every gateway in this process
change_feed = ChangeFeed()


# =============================================================================
# GATEWAY
# =============================================================================

class PersistenceGateway:
    """
    Reads and conditional writes against the order store.

    Usage:
        gateway = PersistenceGateway(db)
        order = gateway.get_order(order_id)
        gateway.conditional_update(order.id, order.status, {"status": OrderStatus.ACTIVE})
    """

    def __init__(self, db_session: Session, feed: Optional[ChangeFeed] = None):
        self.db = db_session
        self.feed = feed or change_feed

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def find_order(self, order_id: str) -> Optional[OrderDB]:
        try:
            return (
                self.db.query(OrderDB)
                .populate_existing()
                .filter(OrderDB.id == order_id)
                .first()
            )
        except DBAPIError as e:
            self.db.rollback()
            raise TransportError("The order store is unavailable; please retry.") from e

    def get_order(self, order_id: str) -> OrderDB:
        order = self.find_order(order_id)
        if not order:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    def list_orders(self, requester_id: Optional[str] = None, provider_id: Optional[str] = None,
                    status: Optional[OrderStatus] = None) -> List[OrderDB]:
        query = self.db.query(OrderDB).populate_existing()
        if requester_id:
            query = query.filter(OrderDB.requester_id == requester_id)
        if provider_id:
            query = query.filter(OrderDB.provider_id == provider_id)
        if status:
            query = query.filter(OrderDB.status == status)
        return query.order_by(OrderDB.created_at.desc()).all()

    def find_expired_pending(self, now: datetime) -> List[OrderDB]:
        """Pending orders whose confirmation deadline is already behind us."""
        return (
            self.db.query(OrderDB)
            .filter(
                OrderDB.status == OrderStatus.PENDING,
                OrderDB.confirmation_deadline.isnot(None),
                OrderDB.confirmation_deadline <= now,
            )
            .all()
        )

    def list_revisions(self, order_id: str) -> List[RevisionRequestDB]:
        return (
            self.db.query(RevisionRequestDB)
            .filter(RevisionRequestDB.order_id == order_id)
            .order_by(RevisionRequestDB.sequence)
            .all()
        )

    def get_transition_log(self, order_id: str) -> List[OrderTransitionLogDB]:
        return (
            self.db.query(OrderTransitionLogDB)
            .filter(OrderTransitionLogDB.order_id == order_id)
            .order_by(OrderTransitionLogDB.created_at)
            .all()
        )

    def current_status(self, order_id: str) -> Optional[OrderStatus]:
        order = self.find_order(order_id)
        return order.status if order else None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert_order(self, order: OrderDB, log_entry: Optional[OrderTransitionLogDB] = None,
                     now: Optional[datetime] = None) -> OrderDB:
        with acknowledged(self.db):
            self.db.add(order)
            if log_entry is not None:
                self.db.add(log_entry)
        stored = self.get_order(order.id)
        self._publish(stored, ChangeKind.CREATED, now)
        return stored

    def conditional_update(
        self,
        order_id: str,
        expected_status: OrderStatus,
        values: Dict[str, Any],
        extra_conditions: Iterable[Any] = (),
        extra_rows: Iterable[Any] = (),
        change_kind: ChangeKind = ChangeKind.STATUS_CHANGED,
        now: Optional[datetime] = None,
    ) -> OrderDB:
        """
        Apply `values` to the order only if its stored status is still
        `expected_status` and every extra condition holds.

        Extra rows (log entries, revision requests) commit in the same
        transaction. On a lost race nothing is written and ConflictError
        carries the status the store holds now.
        """
        try:
            with acknowledged(self.db):
                matched = (
                    self.db.query(OrderDB)
                    .filter(OrderDB.id == order_id, OrderDB.status == expected_status, *extra_conditions)
                    .update(values, synchronize_session=False)
                )
                if matched != 1:
                    raise ConflictError(
                        "This order was changed by someone else. Showing the latest version.",
                        order_id=order_id,
                        expected_status=expected_status,
                    )
                for row in extra_rows:
                    self.db.add(row)
        except ConflictError as exc:
            current = self.current_status(order_id)
            if current is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id) from exc
            raise ConflictError(
                exc.message, order_id=order_id, expected_status=expected_status, current_status=current,
            ) from None

        stored = self.get_order(order_id)
        self._publish(stored, change_kind, now)
        return stored

    def save(self, *rows: Any) -> None:
        """Persist non-order rows (refund decisions, notifications)."""
        with acknowledged(self.db):
            for row in rows:
                self.db.add(row)

    # -------------------------------------------------------------------------
    # Refund requests
    # -------------------------------------------------------------------------

    def find_refund_by_token(self, operation_token: str) -> Optional[RefundRequestDB]:
        return (
            self.db.query(RefundRequestDB)
            .filter(RefundRequestDB.operation_token == operation_token)
            .first()
        )

    def get_refund(self, refund_id: str) -> RefundRequestDB:
        refund = (
            self.db.query(RefundRequestDB)
            .populate_existing()
            .filter(RefundRequestDB.id == refund_id)
            .first()
        )
        if not refund:
            raise NotFoundError(f"Refund request {refund_id} not found", refund_id=refund_id)
        return refund

    def list_refunds(self, status: Optional[RefundStatus] = None,
                     requested_by: Optional[str] = None,
                     order_id: Optional[str] = None) -> List[RefundRequestDB]:
        query = self.db.query(RefundRequestDB)
        if status:
            query = query.filter(RefundRequestDB.status == status)
        if requested_by:
            query = query.filter(RefundRequestDB.requested_by == requested_by)
        if order_id:
            query = query.filter(RefundRequestDB.order_id == order_id)
        return query.order_by(RefundRequestDB.created_at.desc()).all()

    def insert_refund_request(self, refund: RefundRequestDB) -> tuple:
        """
        Create a refund request exactly once per operation token.

        Returns (refund, created). A token seen before returns the stored row
        with created=False, including when a concurrent duplicate wins the insert.
        """
        existing = self.find_refund_by_token(refund.operation_token)
        if existing:
            self._check_same_attempt(existing, refund)
            return existing, False

        try:
            with acknowledged(self.db):
                self.db.add(refund)
        except IntegrityError:
            existing = self.find_refund_by_token(refund.operation_token)
            if existing is None:
                raise
            self._check_same_attempt(existing, refund)
            logger.info(f"Duplicate refund submission resolved to {existing.id}")
            return existing, False

        return refund, True

    @staticmethod
    def _check_same_attempt(existing: RefundRequestDB, refund: RefundRequestDB) -> None:
        if existing.requested_by != refund.requested_by:
            raise AuthorizationError("This operation token belongs to another user")
        if existing.order_id != refund.order_id:
            raise ValidationError(
                "This operation token was already used for a different order",
                field_errors={"operationToken": "already used"},
            )

    # -------------------------------------------------------------------------
    # Change feed
    # -------------------------------------------------------------------------

    def subscribe(self, change_filter: Optional[ChangeFilter] = None,
                  callback: Optional[Callable[[ChangeEvent], None]] = None) -> Subscription:
        return self.feed.subscribe(change_filter, callback)

    def _publish(self, order: OrderDB, kind: ChangeKind, now: Optional[datetime]) -> None:
        self.feed.publish(ChangeEvent(
            order_id=order.id,
            kind=kind,
            document=order_to_document(order),
            committed_at=deadline_tracker.as_utc(now) or datetime.now(timezone.utc),
        ))

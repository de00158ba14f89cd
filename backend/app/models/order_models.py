"""
Order Engine Data Contracts

Plain dataclasses passed between the engine components.
Timestamps are injected by callers, never generated inside contracts.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .db_models import ActorRole, NotificationType, OrderStatus


# =============================================================================
# ACTOR
# =============================================================================

@dataclass(frozen=True)
class Actor:
    """
    Identity and role of whoever invokes an operation.

    Passed explicitly into every workflow call; nothing reads ambient session state.
    """
    user_id: Optional[str]
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=ActorRole.SYSTEM)


# =============================================================================
# PACKAGE SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class PackageSnapshot:
    """Package terms copied onto an order at creation time."""
    revision_limit: int
    delivery_time_days: int
    price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revisionLimit": self.revision_limit,
            "deliveryTimeDays": self.delivery_time_days,
            "price": str(self.price),
        }


# =============================================================================
# DEADLINES
# =============================================================================

class Urgency(str, Enum):
    """User-facing urgency tier for a deadline."""
    CRITICAL = "critical"
    WARNING = "warning"
    NORMAL = "normal"


@dataclass(frozen=True)
class DeadlineStatus:
    """
    Result of evaluating a deadline against "now".

    remaining: time left, never negative (zero once expired)
    urgency: display tier
    expired: the only field guards may depend on
    has_deadline: False when no deadline was set
    """
    remaining: timedelta
    urgency: Urgency
    expired: bool
    has_deadline: bool = True

    @property
    def remaining_seconds(self) -> int:
        return int(self.remaining.total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remainingSeconds": self.remaining_seconds,
            "urgency": self.urgency.value,
            "expired": self.expired,
            "hasDeadline": self.has_deadline,
        }


@dataclass(frozen=True)
class OrderDeadline:
    """
    The one date an order card shows for its current status.

    kind: confirmation, work, revision, auto_completion, completed, cancelled, unknown
    countdown: evaluated for running deadlines, None for past dates (completed, cancelled)
    """
    kind: str
    label: str
    date: Optional[datetime]
    countdown: Optional[DeadlineStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "label": self.label,
            "date": self.date.isoformat() if self.date else None,
            "countdown": self.countdown.to_dict() if self.countdown else None,
        }


# =============================================================================
# CHANGE FEED
# =============================================================================

class ChangeKind(str, Enum):
    """What kind of acknowledged write produced a change event."""
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    PAYMENT_CHANGED = "payment_changed"
    REVISION_REQUESTED = "revision_requested"


@dataclass(frozen=True)
class ChangeEvent:
    """Pushed to subscribers after a write to an order is acknowledged."""
    order_id: str
    kind: ChangeKind
    document: Dict[str, Any]
    committed_at: datetime


@dataclass(frozen=True)
class ChangeFilter:
    """
    Subscription filter. Any field left as None matches everything.
    user_id matches either party of the order.
    """
    order_id: Optional[str] = None
    user_id: Optional[str] = None

    def matches(self, event: ChangeEvent) -> bool:
        if self.order_id is not None and event.order_id != self.order_id:
            return False
        if self.user_id is not None:
            parties = (event.document.get("requesterId"), event.document.get("providerId"))
            if self.user_id not in parties:
                return False
        return True


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@dataclass(frozen=True)
class NotificationEvent:
    """Fire-and-forget event for the counterparty of a transition."""
    type: NotificationType
    target_user_id: str
    order_id: Optional[str] = None
    old_status: Optional[OrderStatus] = None
    new_status: Optional[OrderStatus] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type.value,
            "targetUserId": self.target_user_id,
        }
        if self.order_id is not None:
            payload["orderId"] = self.order_id
        if self.old_status is not None:
            payload["oldStatus"] = self.old_status.value
        if self.new_status is not None:
            payload["newStatus"] = self.new_status.value
        return payload

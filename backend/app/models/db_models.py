"""
Gig Marketplace Orders - SQLAlchemy ORM Models
Persistent storage for orders, revisions, refunds and payout destinations
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS FOR ORDER LIFECYCLE
# =============================================================================

class OrderStatus(str, Enum):
    """Canonical order status. Exactly one at any time."""
    PENDING = "pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    ACTIVE = "active"
    IN_REVISION = "in_revision"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment axis, independent of order status."""
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class OrderAction(str, Enum):
    """Actions that may be submitted to the order state machine."""
    ACCEPT = "accept"
    REJECT = "reject"
    DEADLINE_TICK = "deadline_tick"
    DELIVER = "deliver"
    REQUEST_REVISION = "request_revision"
    ACCEPT_DELIVERY = "accept_delivery"
    REFUND_APPROVED = "refund_approved"


class ActorRole(str, Enum):
    """Who is invoking a transition."""
    REQUESTER = "requester"       # client
    PROVIDER = "provider"         # freelancer
    ADMINISTRATOR = "administrator"
    SYSTEM = "system"


class RefundStatus(str, Enum):
    """Lifecycle of a refund request."""
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class NotificationType(str, Enum):
    """Notification event types consumed by the dispatcher."""
    ORDER_STATUS = "order_status"
    MESSAGE = "message"
    REVIEW = "review"
    PAYMENT = "payment"


# =============================================================================
# ORDER MODELS
# =============================================================================

class OrderDB(Base):
    """
    One purchased engagement between a requester and a provider.
    Status writes go through conditional updates only (see PersistenceGateway).
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)  # UUID
    order_number = Column(String(32), unique=True, nullable=False)

    # Parties (opaque references to external user records)
    requester_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    package_type = Column(String(20), default="basic")  # basic, standard, premium

    # Status axes
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)

    # Package snapshot - copied at creation, never written again
    revision_limit = Column(Integer, nullable=False, default=3)
    delivery_time_days = Column(Integer, nullable=False, default=7)
    price = Column(Numeric(14, 2), nullable=False)

    # Financial split (derived from the snapshot price)
    platform_fee = Column(Numeric(14, 2), nullable=False, default=0)
    provider_earning = Column(Numeric(14, 2), nullable=False, default=0)

    revision_count = Column(Integer, nullable=False, default=0)

    # Deadlines
    confirmation_deadline = Column(DateTime(timezone=True), nullable=True)
    delivery_deadline = Column(DateTime(timezone=True), nullable=True)  # Set on accept

    # Timeline
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)  # Latest delivery
    completed_at = Column(DateTime(timezone=True), nullable=True)  # Set once
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Relationships
    revision_requests = relationship("RevisionRequestDB", back_populates="order", cascade="all, delete-orphan")
    refund_requests = relationship("RefundRequestDB", back_populates="order", cascade="all, delete-orphan")
    transition_log = relationship("OrderTransitionLogDB", back_populates="order", cascade="all, delete-orphan")


class RevisionRequestDB(Base):
    """
    Requester-initiated demand for rework.
    Count per order never exceeds the order's revision_limit.
    """
    __tablename__ = "revision_requests"

    id = Column(String(36), primary_key=True)  # UUID
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    requested_by = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    sequence = Column(Integer, nullable=False)  # 1-based position within the order's allowance

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("OrderDB", back_populates="revision_requests")


class RefundRequestDB(Base):
    """
    One refund attempt. Created only for paid orders in a refund-eligible status.
    operation_token is unique so a duplicate submission resolves to the same row.
    """
    __tablename__ = "refund_requests"
    __table_args__ = (
        UniqueConstraint("operation_token", name="uq_refund_requests_operation_token"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    requested_by = Column(String(64), nullable=False, index=True)

    reason = Column(Text, nullable=False)
    reason_category = Column(String(120), nullable=True)  # Selected entry from the fixed list
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id", ondelete="SET NULL"), nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)  # From the order, never user-entered

    status = Column(SQLEnum(RefundStatus), nullable=False, default=RefundStatus.SUBMITTED)
    operation_token = Column(String(120), nullable=False)

    # Administrator decision
    decided_by = Column(String(64), nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    decision_note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("OrderDB", back_populates="refund_requests")


class BankAccountDB(Base):
    """
    Payout destination owned by exactly one user.
    At most one account per owner carries is_primary.
    """
    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True)  # UUID
    owner_id = Column(String(64), nullable=False, index=True)

    bank_name = Column(String(50), nullable=False)
    account_number = Column(String(34), nullable=False)  # Digits only
    account_holder_name = Column(String(255), nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class OrderTransitionLogDB(Base):
    """
    Immutable log of order transitions.
    Append-only - one row per acknowledged status change.
    """
    __tablename__ = "order_transition_log"

    id = Column(String(36), primary_key=True)  # UUID
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    from_status = Column(SQLEnum(OrderStatus), nullable=True)  # NULL for creation
    to_status = Column(SQLEnum(OrderStatus), nullable=False)
    action = Column(String(40), nullable=False)
    actor_role = Column(SQLEnum(ActorRole), nullable=False)
    actor_id = Column(String(64), nullable=True)

    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("OrderDB", back_populates="transition_log")


class NotificationDB(Base):
    """Stored notification events (written by the default dispatcher sink)."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)  # UUID
    type = Column(SQLEnum(NotificationType), nullable=False)
    target_user_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(36), nullable=True, index=True)
    old_status = Column(String(40), nullable=True)
    new_status = Column(String(40), nullable=True)
    is_read = Column(Boolean, default=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)

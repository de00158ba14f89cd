"""Gig Marketplace Orders - Data Models"""
from .db_models import (
    # Enums
    OrderStatus, PaymentStatus, OrderAction, ActorRole, RefundStatus, NotificationType,
    # ORM
    OrderDB, RevisionRequestDB, RefundRequestDB, BankAccountDB,
    OrderTransitionLogDB, NotificationDB,
)
from .order_models import (
    Actor, PackageSnapshot, Urgency, DeadlineStatus,
    ChangeKind, ChangeEvent, ChangeFilter, NotificationEvent,
)

__all__ = [
    "OrderStatus", "PaymentStatus", "OrderAction", "ActorRole", "RefundStatus", "NotificationType",
    "OrderDB", "RevisionRequestDB", "RefundRequestDB", "BankAccountDB",
    "OrderTransitionLogDB", "NotificationDB",
    "Actor", "PackageSnapshot", "Urgency", "DeadlineStatus",
    "ChangeKind", "ChangeEvent", "ChangeFilter", "NotificationEvent",
]

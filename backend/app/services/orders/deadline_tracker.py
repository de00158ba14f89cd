"""
Deadline Tracker

Pure deadline computation. No database, no clock of its own:
callers pass "now" so every order read re-evaluates against the current time.

Key behaviors:
- evaluate() never raises; a missing deadline is "no deadline", not an error
- Guards depend only on `expired`; the UI depends on `urgency`
- Naive datetimes are treated as UTC (SQLite returns them without tzinfo)
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from ...models.db_models import OrderStatus
from ...models.order_models import DeadlineStatus, OrderDeadline, Urgency


# =============================================================================
# DEADLINE CONFIGURATION
# =============================================================================

DEADLINE_CONFIG = {
    # Countdown tiers (seconds remaining)
    "critical_seconds": int(os.getenv("DEADLINE_CRITICAL_SECONDS", "300")),    # Last 5 minutes
    "warning_seconds": int(os.getenv("DEADLINE_WARNING_SECONDS", "1800")),     # Last 30 minutes
}

# Provider must accept or reject within this window after the order is placed
CONFIRMATION_WINDOW_HOURS = int(os.getenv("CONFIRMATION_WINDOW_HOURS", "24"))

# Display windows for the order card
AUTO_COMPLETION_HOURS = int(os.getenv("AUTO_COMPLETION_HOURS", "24"))   # after delivery
REVISION_WINDOW_HOURS = int(os.getenv("REVISION_WINDOW_HOURS", "24"))   # after the latest revision request

NO_DEADLINE = DeadlineStatus(
    remaining=timedelta(0),
    urgency=Urgency.NORMAL,
    expired=False,
    has_deadline=False,
)


def as_utc(value: Any) -> Optional[datetime]:
    """Normalize a timestamp to an aware UTC datetime. Unparseable input gives None."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    try:
        return value.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        # Offset pushes the instant outside datetime.min..datetime.max
        return None


def classify_urgency(remaining: timedelta, expired: bool) -> Urgency:
    """Map remaining time onto the three display tiers."""
    if expired:
        return Urgency.CRITICAL
    seconds = remaining.total_seconds()
    if seconds <= DEADLINE_CONFIG["critical_seconds"]:
        return Urgency.CRITICAL
    if seconds <= DEADLINE_CONFIG["warning_seconds"]:
        return Urgency.WARNING
    return Urgency.NORMAL


def evaluate(deadline: Any, now: Any) -> DeadlineStatus:
    """
    Evaluate a deadline against "now".

    Returns DeadlineStatus(remaining, urgency, expired). Total: any missing or
    unreadable deadline yields NO_DEADLINE; an unreadable "now" falls back to
    the wall clock.
    """
    deadline_utc = as_utc(deadline)
    if deadline_utc is None:
        return NO_DEADLINE

    now_utc = as_utc(now) or datetime.now(timezone.utc)

    try:
        remaining = deadline_utc - now_utc
    except OverflowError:
        return NO_DEADLINE
    expired = remaining <= timedelta(0)
    if expired:
        remaining = timedelta(0)

    return DeadlineStatus(
        remaining=remaining,
        urgency=classify_urgency(remaining, expired),
        expired=expired,
    )


def format_remaining(status: DeadlineStatus) -> str:
    """Human-readable label for a deadline status."""
    if not status.has_deadline:
        return "Tidak ada deadline"
    if status.expired:
        return "Terlambat"

    total = status.remaining_seconds
    days, rest = divmod(total, 86400)
    hours = rest // 3600
    if days > 0:
        return f"{days} hari {hours} jam"
    if hours > 0:
        return f"{hours} jam"
    minutes = (rest % 3600) // 60
    return f"{minutes} menit"


def calculate_confirmation_deadline(created_at: datetime) -> datetime:
    """Deadline for the provider to respond to a new order."""
    return as_utc(created_at) + timedelta(hours=CONFIRMATION_WINDOW_HOURS)


def calculate_delivery_deadline(confirmed_at: datetime, delivery_time_days: int) -> datetime:
    """Delivery deadline counted from acceptance, using the package snapshot."""
    return as_utc(confirmed_at) + timedelta(days=int(delivery_time_days))


# =============================================================================
# ORDER CARD DEADLINE
# =============================================================================

def _latest(*values: Any) -> Optional[datetime]:
    present = [v for v in (as_utc(value) for value in values) if v is not None]
    return max(present) if present else None


def revision_deadline(order: Any, revisions: Iterable[Any]) -> Optional[datetime]:
    """
    Deadline while an order is in revision.

    The later of (latest revision request + REVISION_WINDOW_HOURS) and the
    original delivery deadline. None when no revision was ever requested.
    """
    requested = [as_utc(r.created_at) for r in revisions]
    requested = [r for r in requested if r is not None]
    if not requested:
        return None
    return _latest(max(requested) + timedelta(hours=REVISION_WINDOW_HOURS), order.delivery_deadline)


def order_deadline(order: Any, revisions: Iterable[Any] = (), now: Any = None,
                   status: Any = None) -> OrderDeadline:
    """
    Pick the deadline an order card shows for `status` (defaults to order.status).

    Pass the effective status so a lazily expired pending order reads as
    cancelled at its confirmation deadline.
    """
    status = status or order.status

    if status in (OrderStatus.PENDING, OrderStatus.AWAITING_CONFIRMATION):
        kind, label, date = "confirmation", "Batal Otomatis", as_utc(order.confirmation_deadline)
    elif status == OrderStatus.ACTIVE:
        kind, label, date = "work", "Deadline", as_utc(order.delivery_deadline)
    elif status == OrderStatus.IN_REVISION:
        kind, label, date = "revision", "Deadline", revision_deadline(order, revisions)
    elif status == OrderStatus.DELIVERED:
        delivered_at = as_utc(getattr(order, "delivered_at", None))
        date = delivered_at + timedelta(hours=AUTO_COMPLETION_HOURS) if delivered_at else None
        kind, label = "auto_completion", "Selesai Otomatis"
    elif status == OrderStatus.COMPLETED:
        return OrderDeadline("completed", "Tanggal Selesai", as_utc(order.completed_at))
    elif status == OrderStatus.CANCELLED:
        date = as_utc(order.cancelled_at) or as_utc(order.confirmation_deadline)
        return OrderDeadline("cancelled", "Tanggal Dibatalkan", date)
    else:
        return OrderDeadline("unknown", "Tidak ada deadline", None)

    countdown = evaluate(date, now) if date is not None else None
    return OrderDeadline(kind, label, date, countdown)

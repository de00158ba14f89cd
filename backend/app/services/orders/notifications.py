"""
Notification Dispatcher

Fire-and-forget delivery of order events to the counterparty.
A failing sink is logged and skipped; it never rolls back the transition
that produced the event.
"""
import logging
from typing import Callable, Iterable, List, Optional
from uuid import uuid4

from ...database import SessionLocal
from ...models.db_models import NotificationDB, utcnow
from ...models.order_models import NotificationEvent

logger = logging.getLogger(__name__)


NotificationSink = Callable[[NotificationEvent], None]


class DatabaseNotificationSink:
    """
    Stores each event as a NotificationDB row.

    Uses its own session so a failure here cannot touch the caller's
    transaction.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def __call__(self, event: NotificationEvent) -> None:
        db = self.session_factory()
        try:
            db.add(NotificationDB(
                id=str(uuid4()),
                type=event.type,
                target_user_id=event.target_user_id,
                order_id=event.order_id,
                old_status=event.old_status.value if event.old_status else None,
                new_status=event.new_status.value if event.new_status else None,
                created_at=utcnow(),
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def log_sink(event: NotificationEvent) -> None:
    logger.info(f"Notify {event.target_user_id}: {event.to_payload()}")


class NotificationDispatcher:
    """
    Fan-out to registered sinks.

    Usage:
        dispatcher = NotificationDispatcher([log_sink])
        dispatcher.dispatch(NotificationEvent(...))
    """

    def __init__(self, sinks: Optional[Iterable[NotificationSink]] = None):
        self.sinks: List[NotificationSink] = list(sinks) if sinks is not None else []

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def dispatch(self, event: NotificationEvent) -> int:
        """Deliver to every sink. Returns how many sinks succeeded."""
        delivered = 0
        for sink in self.sinks:
            try:
                sink(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Notification delivery failed for user {event.target_user_id} "
                    f"(order {event.order_id}, type {event.type.value})"
                )
        return delivered


default_dispatcher = NotificationDispatcher([log_sink, DatabaseNotificationSink()])


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency; overridden in tests."""
    return default_dispatcher

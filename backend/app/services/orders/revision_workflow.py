"""
Revision Workflow

Requester-initiated rework on a delivered order, bounded by the
package snapshot's revision limit.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from ...models.db_models import OrderDB, RevisionRequestDB, OrderAction, ActorRole
from ...models.order_models import Actor, ChangeKind
from . import deadline_tracker
from .errors import EmptyMessageError, RevisionLimitError, AuthorizationError, GuardError
from .state_machine import OrderStateMachine, ensure_party

logger = logging.getLogger(__name__)


def is_revision_disabled(order: Any) -> bool:
    """True when the allowance is used up or the delivery was already accepted."""
    return (order.revision_count or 0) >= order.revision_limit or order.completed_at is not None


def remaining_revisions(order: Any) -> int:
    return max(0, order.revision_limit - (order.revision_count or 0))


def revision_count_text(order: Any) -> str:
    """Usage label, e.g. "1/3"."""
    return f"{order.revision_count or 0}/{order.revision_limit}"


class RevisionWorkflow:
    """Validates, counts and commits revision requests."""

    def __init__(self, state_machine: OrderStateMachine):
        self.state_machine = state_machine

    def request(self, order: OrderDB, message: Optional[str], actor: Actor,
                now: Optional[datetime] = None) -> RevisionRequestDB:
        """
        Record a revision request and move the order to in_revision.

        The counter increment, the status change and the stored request commit
        together; the write re-checks the count so two concurrent requests
        cannot overshoot the limit.
        """
        now = deadline_tracker.as_utc(now) or datetime.now(timezone.utc)

        text = (message or "").strip()
        if not text:
            raise EmptyMessageError()

        if actor.role != ActorRole.REQUESTER:
            raise AuthorizationError("Only the client can request a revision")
        ensure_party(order, actor)

        if order.completed_at is not None:
            raise GuardError(
                "The delivery was already accepted as completed",
                current_status=order.status, action=OrderAction.REQUEST_REVISION, rule="already_completed",
            )
        if is_revision_disabled(order):
            raise RevisionLimitError(
                f"Revision limit reached ({revision_count_text(order)})",
                current_status=order.status, action=OrderAction.REQUEST_REVISION, rule="revision_limit_reached",
            )

        observed_count = order.revision_count or 0
        revision = RevisionRequestDB(
            id=str(uuid4()),
            order_id=order.id,
            requested_by=actor.user_id,
            message=text,
            sequence=observed_count + 1,
            created_at=now,
        )

        self.state_machine.apply(
            order,
            OrderAction.REQUEST_REVISION,
            actor,
            now,
            extra_values={"revision_count": OrderDB.revision_count + 1},
            extra_conditions=[
                OrderDB.revision_count == observed_count,
                OrderDB.revision_count < OrderDB.revision_limit,
                OrderDB.completed_at.is_(None),
            ],
            extra_rows=[revision],
            change_kind=ChangeKind.REVISION_REQUESTED,
        )

        logger.info(f"Revision {revision.sequence}/{order.revision_limit} requested on order {order.id}")
        return revision

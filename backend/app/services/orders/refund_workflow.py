"""
Refund Workflow

Two halves:
- RefundWizard: the requester-side three-step flow (reason -> destination ->
  confirm) that produces exactly one submission per attempt
- RefundWorkflow: the service side that validates, stores and decides
  refund requests

STEP MODEL:
    REASON --next--> DESTINATION --next--> CONFIRM --submit--> SUBMITTED
      ^                 |   ^                  |
      +------back-------+   +------back--------+
    Any step --close--> CLOSED (discards everything, no side effects)
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from ...models.db_models import (
    OrderDB, RefundRequestDB,
    OrderStatus, PaymentStatus, OrderAction, ActorRole, RefundStatus, NotificationType,
)
from ...models.order_models import Actor, ChangeKind, NotificationEvent
from . import deadline_tracker
from .bank_accounts import BankAccountRegistry, mask
from .errors import (
    OrderEngineError, ValidationError, GuardError, RefundNotEligibleError, AuthorizationError,
)
from .persistence import PersistenceGateway
from .state_machine import OrderStateMachine, effective_status

logger = logging.getLogger(__name__)


# =============================================================================
# REFUND RULES
# =============================================================================

REFUND_REASONS = [
    "Freelancer tidak merespons dalam waktu yang ditentukan",
    "Freelancer menolak pekerjaan",
    "Kualitas pekerjaan tidak sesuai ekspektasi",
    "Freelancer tidak dapat menyelesaikan pekerjaan",
    "Perubahan kebutuhan proyek",
    "Lainnya",
]

OTHER_REASON = "Lainnya"

REFUND_ELIGIBLE_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.AWAITING_CONFIRMATION,
    OrderStatus.CANCELLED,
    OrderStatus.ACTIVE,
})


def check_refund_eligibility(order: Any, now: Optional[datetime] = None) -> Tuple[bool, Optional[str]]:
    """
    Check if a refund may be requested for this order.

    Returns (eligible, reason)
    """
    now = deadline_tracker.as_utc(now) or datetime.now(timezone.utc)

    payment = getattr(order.payment_status, "value", order.payment_status)
    if payment != PaymentStatus.PAID.value:
        if payment == PaymentStatus.REFUNDED.value:
            return False, "This order has already been refunded"
        return False, "Only paid orders can be refunded"

    status = effective_status(order.status, order.confirmation_deadline, now)
    if status not in REFUND_ELIGIBLE_STATUSES:
        label = status.value if status else order.status
        return False, f"Orders that are {label} cannot be refunded"

    return True, None


def ensure_refund_eligible(order: Any, now: Optional[datetime] = None) -> None:
    eligible, reason = check_refund_eligibility(order, now)
    if not eligible:
        raise RefundNotEligibleError(reason, current_status=order.status, rule="refund_not_eligible")


def resolve_reason(reason: Optional[str], custom_reason: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """
    Turn a selected reason (plus free text for "Lainnya") into (reason, category).

    Raises ValidationError when nothing usable was given.
    """
    selected = (reason or "").strip()
    custom = (custom_reason or "").strip()

    if not selected:
        raise ValidationError("Please choose a refund reason", field_errors={"reason": "required"})

    if selected == OTHER_REASON:
        if not custom:
            raise ValidationError("Please describe the refund reason", field_errors={"customReason": "required"})
        return custom, OTHER_REASON

    if selected in REFUND_REASONS:
        return selected, selected

    # Free text submitted directly (API clients send the final reason string)
    return selected, None


# =============================================================================
# SUBMISSION CONTRACT
# =============================================================================

@dataclass(frozen=True)
class RefundSubmission:
    """Exactly what the wizard sends when the requester confirms."""
    order_id: str
    reason: str
    bank_account_id: str
    requested_by: str
    operation_token: str
    reason_category: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "orderId": self.order_id,
            "reason": self.reason,
            "bankAccountId": self.bank_account_id,
            "requestedBy": self.requested_by,
            "operationToken": self.operation_token,
        }
        if self.reason_category:
            payload["reasonCategory"] = self.reason_category
        return payload


@dataclass(frozen=True)
class RefundSummary:
    """What the confirm step shows. The account number is always masked."""
    order_id: str
    amount: Decimal
    reason: str
    bank_name: str
    masked_account_number: str
    account_holder_name: str


# =============================================================================
# WIZARD
# =============================================================================

class WizardStep(str, Enum):
    REASON = "reason"
    DESTINATION = "destination"
    CONFIRM = "confirm"
    SUBMITTED = "submitted"
    CLOSED = "closed"


WIZARD_FLOW = {
    WizardStep.REASON: {"next": WizardStep.DESTINATION, "back": None},
    WizardStep.DESTINATION: {"next": WizardStep.CONFIRM, "back": WizardStep.REASON},
    WizardStep.CONFIRM: {"next": None, "back": WizardStep.DESTINATION},
}


class RefundWizard:
    """
    Requester-side refund flow for one order.

    `accounts` is anything with list/create/get_for_owner (a BankAccountRegistry
    or the remote adapter in api_client). `submitter` receives the
    RefundSubmission and returns the stored request.

    The operation token is fixed for the lifetime of the wizard, so repeated
    submits of the same attempt resolve to one refund request.
    """

    def __init__(self, order: Any, actor: Actor, accounts: Any,
                 submitter: Callable[[RefundSubmission], Any],
                 operation_token: Optional[str] = None, now: Optional[datetime] = None):
        if actor.role != ActorRole.REQUESTER or actor.user_id != order.requester_id:
            raise AuthorizationError("Only the client who placed this order can request a refund")
        ensure_refund_eligible(order, now)

        self.order = order
        self.actor = actor
        self.accounts = accounts
        self.submitter = submitter
        self.now = now
        self.operation_token = operation_token or str(uuid4())

        self.step = WizardStep.REASON
        self.reason: Optional[str] = None
        self.custom_reason = ""
        self.selected_account = None
        self.submitting = False
        self.error: Optional[str] = None
        self.result = None

    # -------------------------------------------------------------------------
    # Step 1: reason
    # -------------------------------------------------------------------------

    def select_reason(self, reason: str, custom_reason: str = "") -> None:
        self._require_step(WizardStep.REASON)
        self.reason = reason
        self.custom_reason = custom_reason or ""
        self.error = None

    # -------------------------------------------------------------------------
    # Step 2: destination
    # -------------------------------------------------------------------------

    def available_accounts(self) -> List[Any]:
        return self.accounts.list(self.actor.user_id)

    @property
    def needs_new_account(self) -> bool:
        """No saved accounts: the destination step shows the inline create form."""
        return not self.available_accounts()

    def select_account(self, account_id: str) -> None:
        self._require_step(WizardStep.DESTINATION)
        self.selected_account = self.accounts.get_for_owner(account_id, self.actor.user_id)
        self.error = None

    def create_account(self, fields: Dict[str, Any]) -> Any:
        """Create a destination inline and select it."""
        self._require_step(WizardStep.DESTINATION)
        account = self.accounts.create(self.actor.user_id, fields)
        self.selected_account = account
        self.error = None
        return account

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def next(self) -> WizardStep:
        """Advance one step. Raises ValidationError when the current step is incomplete."""
        if self.step == WizardStep.REASON:
            resolve_reason(self.reason, self.custom_reason)
        elif self.step == WizardStep.DESTINATION:
            if self.selected_account is None:
                raise ValidationError("Please choose a bank account", field_errors={"bankAccountId": "required"})
            ensure_refund_eligible(self.order, self.now)
        else:
            raise ValidationError(f"Cannot advance from the {self.step.value} step")

        self.step = WIZARD_FLOW[self.step]["next"]
        return self.step

    def back(self) -> WizardStep:
        """Always allowed while the wizard is open; keeps what was entered."""
        if self.step in WIZARD_FLOW and WIZARD_FLOW[self.step]["back"] is not None:
            self.step = WIZARD_FLOW[self.step]["back"]
        return self.step

    # -------------------------------------------------------------------------
    # Step 3: confirm
    # -------------------------------------------------------------------------

    def summary(self) -> RefundSummary:
        self._require_step(WizardStep.CONFIRM)
        reason, _ = resolve_reason(self.reason, self.custom_reason)
        account = self.selected_account
        return RefundSummary(
            order_id=self.order.id,
            amount=Decimal(str(self.order.price)),
            reason=reason,
            bank_name=account.bank_name,
            masked_account_number=mask(account.account_number),
            account_holder_name=account.account_holder_name,
        )

    @property
    def can_submit(self) -> bool:
        return self.step == WizardStep.CONFIRM and not self.submitting

    def build_submission(self) -> RefundSubmission:
        reason, category = resolve_reason(self.reason, self.custom_reason)
        return RefundSubmission(
            order_id=self.order.id,
            reason=reason,
            reason_category=category,
            bank_account_id=self.selected_account.id,
            requested_by=self.actor.user_id,
            operation_token=self.operation_token,
        )

    def submit(self) -> Any:
        """
        Send the refund request once.

        While a submission is in flight, further submits are refused. On
        failure the wizard stays on CONFIRM with the error set; retrying
        reuses the same operation token.
        """
        if self.step == WizardStep.SUBMITTED:
            return self.result
        if self.submitting:
            raise ValidationError("The refund request is already being submitted")
        self._require_step(WizardStep.CONFIRM)

        submission = self.build_submission()
        self.submitting = True
        self.error = None
        try:
            self.result = self.submitter(submission)
        except OrderEngineError as exc:
            self.error = exc.message
            raise
        finally:
            self.submitting = False

        self.step = WizardStep.SUBMITTED
        logger.info(f"Refund submitted for order {self.order.id} (token {self.operation_token})")
        return self.result

    def close(self) -> None:
        """Dismiss the wizard. Nothing is persisted."""
        self.step = WizardStep.CLOSED
        self.reason = None
        self.custom_reason = ""
        self.selected_account = None
        self.error = None

    def _require_step(self, expected: WizardStep) -> None:
        if self.step != expected:
            raise ValidationError(f"Refund wizard is at the {self.step.value} step, not {expected.value}")


# =============================================================================
# SERVICE
# =============================================================================

def refund_to_dict(refund: RefundRequestDB, account=None) -> Dict[str, Any]:
    body = {
        "id": refund.id,
        "orderId": refund.order_id,
        "requestedBy": refund.requested_by,
        "reason": refund.reason,
        "reasonCategory": refund.reason_category,
        "bankAccountId": refund.bank_account_id,
        "amount": str(refund.amount),
        "status": getattr(refund.status, "value", refund.status),
        "operationToken": refund.operation_token,
        "decidedBy": refund.decided_by,
        "decidedAt": refund.decided_at.isoformat() if refund.decided_at else None,
        "decisionNote": refund.decision_note,
        "createdAt": refund.created_at.isoformat() if refund.created_at else None,
    }
    if account is not None:
        body["bankAccount"] = {
            "bankName": account.bank_name,
            "accountNumber": mask(account.account_number),
            "accountHolderName": account.account_holder_name,
        }
    return body


class RefundWorkflow:
    """
    Stores refund requests and applies administrator decisions.

    Approval cancels a still-open order and marks payment refunded in one
    conditional write. An order that is already cancelled only has its
    payment moved to refunded.
    """

    def __init__(self, gateway: PersistenceGateway, accounts: BankAccountRegistry,
                 state_machine: OrderStateMachine, dispatcher=None):
        self.gateway = gateway
        self.accounts = accounts
        self.state_machine = state_machine
        self.dispatcher = dispatcher

    def submit(self, submission: RefundSubmission, actor: Actor,
               now: Optional[datetime] = None) -> Tuple[RefundRequestDB, bool]:
        """
        Create the refund request for a submission.

        Returns (refund, created). A repeated operation token returns the
        original request with created=False.
        """
        now = deadline_tracker.as_utc(now) or datetime.now(timezone.utc)

        if not submission.operation_token:
            raise ValidationError("Operation token is required", field_errors={"operationToken": "required"})
        if actor.user_id != submission.requested_by:
            raise AuthorizationError("Refunds can only be requested for yourself")

        existing = self.gateway.find_refund_by_token(submission.operation_token)
        if existing is not None:
            if existing.requested_by != actor.user_id:
                raise AuthorizationError("This operation token belongs to another user")
            if existing.order_id == submission.order_id:
                return existing, False

        reason, category = resolve_reason(submission.reason)
        order = self.gateway.get_order(submission.order_id)
        if order.requester_id != actor.user_id:
            raise AuthorizationError("Only the client who placed this order can request a refund")

        ensure_refund_eligible(order, now)
        account = self.accounts.get_for_owner(submission.bank_account_id, actor.user_id)

        open_requests = [
            r for r in self.gateway.list_refunds(status=RefundStatus.SUBMITTED, order_id=order.id)
            if r.operation_token != submission.operation_token
        ]
        if open_requests:
            raise GuardError(
                "A refund request for this order is already being reviewed",
                current_status=order.status, rule="refund_already_open",
            )

        refund = RefundRequestDB(
            id=str(uuid4()),
            order_id=order.id,
            requested_by=actor.user_id,
            reason=reason,
            reason_category=submission.reason_category or category,
            bank_account_id=account.id,
            amount=order.price,
            status=RefundStatus.SUBMITTED,
            operation_token=submission.operation_token,
            created_at=now,
        )
        refund, created = self.gateway.insert_refund_request(refund)

        if created:
            logger.info(f"Refund request {refund.id} created for order {order.id} ({refund.amount})")
        return refund, created

    def approve(self, refund_id: str, actor: Actor, note: Optional[str] = None,
                now: Optional[datetime] = None) -> RefundRequestDB:
        """
        AUTHORITY: ADMINISTRATOR.

        Cancels the order (if still open) and marks its payment refunded.
        """
        now = deadline_tracker.as_utc(now) or datetime.now(timezone.utc)
        self._require_admin(actor)
        refund = self._open_refund(refund_id)

        order = self.state_machine.settle_deadline(self.gateway.get_order(refund.order_id), now)

        if order.status == OrderStatus.CANCELLED:
            if order.payment_status != PaymentStatus.PAID:
                raise GuardError(
                    "Payment for this order is not in a refundable state",
                    current_status=order.status, action=OrderAction.REFUND_APPROVED, rule="payment_not_paid",
                )
            self._decide(refund, RefundStatus.APPROVED, actor, note, now)
            self.gateway.conditional_update(
                order_id=order.id,
                expected_status=OrderStatus.CANCELLED,
                values={"payment_status": PaymentStatus.REFUNDED, "updated_at": now},
                extra_conditions=[OrderDB.payment_status == PaymentStatus.PAID],
                change_kind=ChangeKind.PAYMENT_CHANGED,
                now=now,
            )
        else:
            # Validate first so a refused transition leaves the refund untouched
            self.state_machine.transition(order, OrderAction.REFUND_APPROVED, actor.role, now)
            self._decide(refund, RefundStatus.APPROVED, actor, note, now)
            self.state_machine.apply(
                order,
                OrderAction.REFUND_APPROVED,
                actor,
                now,
                extra_values={"payment_status": PaymentStatus.REFUNDED},
            )

        logger.info(f"Refund {refund.id} approved by {actor.user_id}; order {order.id} refunded")
        self._notify_requester(order, refund, "approved")
        return self.gateway.get_refund(refund.id)

    def reject(self, refund_id: str, actor: Actor, note: Optional[str] = None,
               now: Optional[datetime] = None) -> RefundRequestDB:
        """AUTHORITY: ADMINISTRATOR. The order is left as it is."""
        now = deadline_tracker.as_utc(now) or datetime.now(timezone.utc)
        self._require_admin(actor)
        refund = self._open_refund(refund_id)

        self._decide(refund, RefundStatus.REJECTED, actor, note, now)
        self.gateway.save(refund)

        logger.info(f"Refund {refund.id} rejected by {actor.user_id}")
        order = self.gateway.get_order(refund.order_id)
        self._notify_requester(order, refund, "rejected")
        return refund

    def list_refunds(self, actor: Actor, status: Optional[RefundStatus] = None) -> List[RefundRequestDB]:
        """Administrators see every request; requesters see their own."""
        if actor.role == ActorRole.ADMINISTRATOR:
            return self.gateway.list_refunds(status=status)
        return self.gateway.list_refunds(status=status, requested_by=actor.user_id)

    def _require_admin(self, actor: Actor) -> None:
        if actor.role != ActorRole.ADMINISTRATOR:
            raise AuthorizationError("Only an administrator can decide refund requests")

    def _open_refund(self, refund_id: str) -> RefundRequestDB:
        refund = self.gateway.get_refund(refund_id)
        if refund.status != RefundStatus.SUBMITTED:
            raise GuardError(
                f"Refund request was already {refund.status.value}",
                current_status=refund.status, rule="refund_already_decided",
            )
        return refund

    @staticmethod
    def _decide(refund: RefundRequestDB, status: RefundStatus, actor: Actor,
                note: Optional[str], now: datetime) -> None:
        refund.status = status
        refund.decided_by = actor.user_id
        refund.decided_at = now
        refund.decision_note = (note or "").strip() or None

    def _notify_requester(self, order: OrderDB, refund: RefundRequestDB, outcome: str) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.dispatch(NotificationEvent(
            type=NotificationType.PAYMENT,
            target_user_id=order.requester_id,
            order_id=order.id,
            new_status=order.status,
            extra={"refundId": refund.id, "outcome": outcome},
        ))

"""
Tests for the refund wizard and refund service.

Tests the complete refund flow:
1. REASON step guard (fixed list + "Lainnya" free text)
2. DESTINATION step (owned accounts only, inline creation)
3. CONFIRM summary (masked number, amount from the order)
4. Exactly-once submission by operation token
5. Eligibility (paid + allowed status)
6. Administrator approval and rejection
7. Closing the wizard has no side effects
"""
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.models.db_models import (
    BankAccountDB, OrderDB, RefundRequestDB, OrderStatus, PaymentStatus, RefundStatus, NotificationType,
)
from app.services.orders.errors import (
    ValidationError, RefundNotEligibleError, AuthorizationError, GuardError, TransportError,
)
from app.services.orders.refund_workflow import (
    RefundWizard, RefundSubmission, WizardStep, REFUND_REASONS, OTHER_REASON,
    check_refund_eligibility, resolve_reason,
)

from conftest import NOW, REQUESTER, PROVIDER, ADMIN, OTHER_REQUESTER


ACCOUNT_FIELDS = {"bankName": "MANDIRI", "accountNumber": "1234567890123", "accountHolderName": "Sari Dewi"}
LATER = NOW + timedelta(hours=2)


def in_process_submitter(service):
    return lambda submission: service.refunds.submit(submission, REQUESTER, now=LATER)[0]


def open_wizard(service, order, **kwargs):
    return RefundWizard(
        order, REQUESTER, service.bank_accounts, in_process_submitter(service), now=LATER, **kwargs
    )


# =============================================================================
# TEST: REASONS AND ELIGIBILITY
# =============================================================================

class TestRefundRules:
    """Tests for reason resolution and eligibility."""

    def test_listed_reason(self):
        assert resolve_reason(REFUND_REASONS[0]) == (REFUND_REASONS[0], REFUND_REASONS[0])

    def test_other_reason_uses_free_text(self):
        assert resolve_reason(OTHER_REASON, "  delayed delivery ") == ("delayed delivery", OTHER_REASON)

    def test_other_reason_requires_text(self):
        with pytest.raises(ValidationError):
            resolve_reason(OTHER_REASON, "   ")

    def test_missing_reason(self):
        with pytest.raises(ValidationError):
            resolve_reason(None)

    @pytest.mark.parametrize("status,eligible", [
        (OrderStatus.PENDING, True),
        (OrderStatus.AWAITING_CONFIRMATION, True),
        (OrderStatus.ACTIVE, True),
        (OrderStatus.CANCELLED, True),
        (OrderStatus.IN_REVISION, False),
        (OrderStatus.DELIVERED, False),
        (OrderStatus.COMPLETED, False),
    ])
    def test_eligibility_by_status(self, status, eligible):
        order = MagicMock()
        order.status = status
        order.payment_status = PaymentStatus.PAID
        order.confirmation_deadline = None

        assert check_refund_eligibility(order, NOW)[0] is eligible

    def test_unpaid_order_is_not_eligible(self):
        order = MagicMock()
        order.status = OrderStatus.ACTIVE
        order.payment_status = PaymentStatus.PENDING
        order.confirmation_deadline = None

        eligible, reason = check_refund_eligibility(order, NOW)

        assert eligible is False
        assert "paid" in reason


# =============================================================================
# TEST: WIZARD
# =============================================================================

class TestRefundWizard:
    """Tests for RefundWizard."""

    def test_full_flow_creates_one_request(self, service, active_order, db):
        """Scenario: "Lainnya" + free text, existing account, confirm → one submitted request."""
        account = service.bank_accounts.create(REQUESTER.user_id, ACCOUNT_FIELDS)
        wizard = open_wizard(service, active_order)

        wizard.select_reason(OTHER_REASON, "delayed delivery")
        assert wizard.next() == WizardStep.DESTINATION
        wizard.select_account(account.id)
        assert wizard.next() == WizardStep.CONFIRM

        summary = wizard.summary()
        assert summary.reason == "delayed delivery"
        assert summary.masked_account_number == "*********0123"
        assert summary.amount == Decimal("150000")

        refund = wizard.submit()

        assert wizard.step == WizardStep.SUBMITTED
        assert refund.status == RefundStatus.SUBMITTED
        assert refund.reason == "delayed delivery"
        assert refund.reason_category == OTHER_REASON
        assert db.query(RefundRequestDB).count() == 1

    def test_reason_guard_blocks_advance(self, service, active_order):
        wizard = open_wizard(service, active_order)

        with pytest.raises(ValidationError):
            wizard.next()
        wizard.select_reason(OTHER_REASON, "")
        with pytest.raises(ValidationError):
            wizard.next()

        assert wizard.step == WizardStep.REASON

    def test_destination_required(self, service, active_order):
        wizard = open_wizard(service, active_order)
        wizard.select_reason(REFUND_REASONS[1])
        wizard.next()

        with pytest.raises(ValidationError):
            wizard.next()

        assert wizard.step == WizardStep.DESTINATION

    def test_back_keeps_entered_data(self, service, active_order):
        wizard = open_wizard(service, active_order)
        wizard.select_reason(OTHER_REASON, "berubah pikiran")
        wizard.next()

        assert wizard.back() == WizardStep.REASON
        assert wizard.reason == OTHER_REASON
        assert wizard.custom_reason == "berubah pikiran"
        assert wizard.back() == WizardStep.REASON

    def test_inline_account_creation_when_none_exist(self, service, active_order):
        wizard = open_wizard(service, active_order)
        wizard.select_reason(REFUND_REASONS[0])
        wizard.next()

        assert wizard.needs_new_account is True
        account = wizard.create_account(ACCOUNT_FIELDS)

        assert wizard.selected_account.id == account.id
        assert account.is_primary is True
        assert wizard.next() == WizardStep.CONFIRM

    def test_cannot_select_another_users_account(self, service, active_order):
        foreign = service.bank_accounts.create(OTHER_REQUESTER.user_id, ACCOUNT_FIELDS)
        wizard = open_wizard(service, active_order)
        wizard.select_reason(REFUND_REASONS[0])
        wizard.next()

        with pytest.raises(AuthorizationError):
            wizard.select_account(foreign.id)

        assert wizard.available_accounts() == []

    def test_close_has_no_side_effects(self, service, active_order, db):
        account = service.bank_accounts.create(REQUESTER.user_id, ACCOUNT_FIELDS)
        wizard = open_wizard(service, active_order)
        wizard.select_reason(REFUND_REASONS[0])
        wizard.next()
        wizard.select_account(account.id)
        wizard.next()

        wizard.close()

        assert wizard.step == WizardStep.CLOSED
        assert wizard.selected_account is None
        assert db.query(RefundRequestDB).count() == 0
        assert db.query(BankAccountDB).count() == 1

    def test_completed_order_cannot_open_wizard(self, service, delivered_order):
        """Scenario: completed orders never reach CONFIRM."""
        service.perform_action(delivered_order.id, "accept_delivery", REQUESTER, now=NOW + timedelta(days=3))
        order = service.gateway.get_order(delivered_order.id)

        with pytest.raises(RefundNotEligibleError):
            open_wizard(service, order)

    def test_unpaid_order_cannot_open_wizard(self, service, make_order):
        with pytest.raises(RefundNotEligibleError):
            open_wizard(service, make_order(paid=False))

    def test_provider_cannot_open_wizard(self, service, active_order):
        with pytest.raises(AuthorizationError):
            RefundWizard(active_order, PROVIDER, service.bank_accounts, MagicMock())

    def test_failed_submission_stays_on_confirm(self, service, active_order):
        """Transport failure: error surfaced, step kept, retry reuses the token."""
        account = service.bank_accounts.create(REQUESTER.user_id, ACCOUNT_FIELDS)
        submitter = MagicMock(side_effect=[TransportError("offline"), {"id": "refund-1"}])
        wizard = RefundWizard(active_order, REQUESTER, service.bank_accounts, submitter, now=LATER)
        wizard.select_reason(REFUND_REASONS[0])
        wizard.next()
        wizard.select_account(account.id)
        wizard.next()

        with pytest.raises(TransportError):
            wizard.submit()

        assert wizard.step == WizardStep.CONFIRM
        assert wizard.error == "offline"
        assert wizard.can_submit is True

        assert wizard.submit() == {"id": "refund-1"}
        tokens = {call.args[0].operation_token for call in submitter.call_args_list}
        assert tokens == {wizard.operation_token}

    def test_submit_while_in_flight_is_refused(self, service, active_order):
        account = service.bank_accounts.create(REQUESTER.user_id, ACCOUNT_FIELDS)
        wizard = open_wizard(service, active_order)
        wizard.select_reason(REFUND_REASONS[0])
        wizard.next()
        wizard.select_account(account.id)
        wizard.next()
        wizard.submitting = True

        assert wizard.can_submit is False
        with pytest.raises(ValidationError):
            wizard.submit()

    def test_submit_twice_returns_same_result(self, service, active_order, db):
        account = service.bank_accounts.create(REQUESTER.user_id, ACCOUNT_FIELDS)
        wizard = open_wizard(service, active_order)
        wizard.select_reason(REFUND_REASONS[0])
        wizard.next()
        wizard.select_account(account.id)
        wizard.next()

        first = wizard.submit()
        second = wizard.submit()

        assert first.id == second.id
        assert db.query(RefundRequestDB).count() == 1


# =============================================================================
# TEST: REFUND SERVICE
# =============================================================================

class TestRefundService:
    """Tests for RefundWorkflow submit/approve/reject."""

    def _submit(self, service, order, token="token-0001", account=None):
        account = account or service.bank_accounts.create(REQUESTER.user_id, ACCOUNT_FIELDS)
        submission = RefundSubmission(
            order_id=order.id,
            reason=REFUND_REASONS[2],
            bank_account_id=account.id,
            requested_by=REQUESTER.user_id,
            operation_token=token,
        )
        return service.refunds.submit(submission, REQUESTER, now=LATER)

    def test_same_token_twice_creates_one_request(self, service, active_order, db):
        """Idempotence: a repeated operation token returns the original request."""
        first, created_first = self._submit(service, active_order)
        account = db.query(BankAccountDB).first()
        second, created_second = self._submit(service, active_order, account=account)

        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert db.query(RefundRequestDB).count() == 1

    def test_amount_comes_from_order(self, service, active_order):
        refund, _ = self._submit(service, active_order)

        assert refund.amount == active_order.price

    def test_second_open_request_is_refused(self, service, active_order, db):
        self._submit(service, active_order)
        account = db.query(BankAccountDB).first()

        with pytest.raises(GuardError):
            self._submit(service, active_order, token="token-0002", account=account)

    def test_submit_for_someone_else_is_refused(self, service, active_order):
        account = service.bank_accounts.create(REQUESTER.user_id, ACCOUNT_FIELDS)
        submission = RefundSubmission(
            order_id=active_order.id, reason="x", bank_account_id=account.id,
            requested_by=OTHER_REQUESTER.user_id, operation_token="token-0003",
        )

        with pytest.raises(AuthorizationError):
            service.refunds.submit(submission, REQUESTER, now=LATER)

    def test_reused_token_from_another_user_is_refused(self, service, active_order, db):
        """A known operation token never hands one user's refund to another."""
        self._submit(service, active_order, token="shared-token-01")
        account = service.bank_accounts.create(OTHER_REQUESTER.user_id, ACCOUNT_FIELDS)
        submission = RefundSubmission(
            order_id=active_order.id, reason=REFUND_REASONS[2], bank_account_id=account.id,
            requested_by=OTHER_REQUESTER.user_id, operation_token="shared-token-01",
        )

        with pytest.raises(AuthorizationError):
            service.refunds.submit(submission, OTHER_REQUESTER, now=LATER)

        assert db.query(RefundRequestDB).count() == 1

    def test_gateway_refuses_token_owned_by_another_user(self, service, active_order):
        self._submit(service, active_order, token="shared-token-02")
        duplicate = SimpleNamespace(
            operation_token="shared-token-02", order_id=active_order.id,
            requested_by=OTHER_REQUESTER.user_id,
        )

        with pytest.raises(AuthorizationError):
            service.gateway.insert_refund_request(duplicate)

        assert service.gateway.find_refund_by_token("shared-token-02").requested_by == REQUESTER.user_id

    def test_submit_for_completed_order_is_refused(self, service, delivered_order, db):
        service.perform_action(delivered_order.id, "accept_delivery", REQUESTER, now=NOW + timedelta(days=3))

        with pytest.raises(RefundNotEligibleError):
            self._submit(service, delivered_order)

        assert db.query(RefundRequestDB).count() == 0

    def test_approve_cancels_active_order_and_refunds(self, service, active_order, sink):
        refund, _ = self._submit(service, active_order)
        sink.events.clear()

        decided = service.refunds.approve(refund.id, ADMIN, note="Disetujui", now=LATER)

        order = service.gateway.get_order(active_order.id)
        assert decided.status == RefundStatus.APPROVED
        assert decided.decided_by == ADMIN.user_id
        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.REFUNDED
        targets = {(e.type, e.target_user_id) for e in sink.events}
        assert (NotificationType.ORDER_STATUS, PROVIDER.user_id) in targets
        assert (NotificationType.PAYMENT, REQUESTER.user_id) in targets

    def test_approve_on_cancelled_order_only_refunds_payment(self, service, make_order):
        order = make_order(paid=True)
        service.perform_action(order.id, "reject", PROVIDER, now=NOW + timedelta(hours=1))
        refund, _ = self._submit(service, order)

        service.refunds.approve(refund.id, ADMIN, now=LATER)

        stored = service.gateway.get_order(order.id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.payment_status == PaymentStatus.REFUNDED
        assert stored.cancellation_reason == "Rejected by freelancer"

    def test_approve_after_lapsed_deadline(self, service, make_order):
        """Pending order past its deadline is settled to cancelled, then refunded."""
        order = make_order(paid=True)
        refund, _ = self._submit(service, order)
        after_deadline = NOW + timedelta(days=2)

        service.refunds.approve(refund.id, ADMIN, now=after_deadline)

        stored = service.gateway.get_order(order.id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.payment_status == PaymentStatus.REFUNDED

    def test_approve_requires_admin(self, service, active_order):
        refund, _ = self._submit(service, active_order)

        with pytest.raises(AuthorizationError):
            service.refunds.approve(refund.id, REQUESTER, now=LATER)

    def test_approve_refused_once_order_delivered(self, service, active_order):
        """Order moved on after the request: refusal leaves the request open."""
        refund, _ = self._submit(service, active_order)
        service.perform_action(active_order.id, "deliver", PROVIDER, now=LATER)

        with pytest.raises(GuardError):
            service.refunds.approve(refund.id, ADMIN, now=LATER)

        assert service.gateway.get_refund(refund.id).status == RefundStatus.SUBMITTED
        assert service.gateway.get_order(active_order.id).payment_status == PaymentStatus.PAID

    def test_reject_leaves_order_untouched(self, service, active_order):
        refund, _ = self._submit(service, active_order)

        decided = service.refunds.reject(refund.id, ADMIN, note="Bukti kurang", now=LATER)

        assert decided.status == RefundStatus.REJECTED
        assert decided.decision_note == "Bukti kurang"
        order = service.gateway.get_order(active_order.id)
        assert order.status == OrderStatus.ACTIVE
        assert order.payment_status == PaymentStatus.PAID

    def test_decided_request_cannot_be_decided_again(self, service, active_order):
        refund, _ = self._submit(service, active_order)
        service.refunds.reject(refund.id, ADMIN, now=LATER)

        with pytest.raises(GuardError):
            service.refunds.approve(refund.id, ADMIN, now=LATER)

    def test_refunded_orders_are_cancelled_or_completed(self, service, active_order, db):
        """Invariant: paymentStatus refunded implies a terminal order status."""
        refund, _ = self._submit(service, active_order)
        service.refunds.approve(refund.id, ADMIN, now=LATER)

        for order in db.query(OrderDB).filter(OrderDB.payment_status == PaymentStatus.REFUNDED):
            assert order.status in (OrderStatus.CANCELLED, OrderStatus.COMPLETED)

    def test_list_refunds_scoped_by_role(self, service, active_order):
        self._submit(service, active_order)

        assert len(service.refunds.list_refunds(ADMIN)) == 1
        assert len(service.refunds.list_refunds(REQUESTER)) == 1
        assert service.refunds.list_refunds(OTHER_REQUESTER) == []

"""
Tests for OrderService and DeadlineSweep.

Covers:
1. Order placement (package snapshot, fees, order number, first deadline)
2. Lazy expiry on read (stored status rewritten on first read past deadline)
3. Full lifecycle and timeline
4. Visibility and listing per role
5. Payment confirmation
6. Live updates evaluated at delivery time
7. Deadline sweep
8. Stale expected status and the per-status current deadline
"""
import re
from datetime import timedelta
from decimal import Decimal

import pytest

from app.models.db_models import OrderStatus, PaymentStatus, OrderAction, NotificationType
from app.models.order_models import ChangeFilter, ChangeKind, PackageSnapshot
from app.services.orders.errors import (
    ValidationError, AuthorizationError, GuardError, DeadlineExpiredError, ConflictError,
)
from app.services.orders.notifications import default_dispatcher
from app.services.orders.order_service import (
    OrderService, DeadlineSweep, calculate_fees, generate_order_number,
)

from conftest import NOW, REQUESTER, PROVIDER, ADMIN, OTHER_REQUESTER, DEFAULT_PACKAGE


PAST_DEADLINE = NOW + timedelta(hours=25)


# =============================================================================
# TEST: PLACEMENT
# =============================================================================

class TestCreateOrder:
    """Tests for create_order()."""

    def test_fee_split(self):
        assert calculate_fees(Decimal("150000")) == (Decimal("15000"), Decimal("135000"))

    def test_fee_rounds_half_up(self):
        fee, earning = calculate_fees(Decimal("99995"))

        assert fee == Decimal("10000")
        assert earning == Decimal("89995")

    def test_order_number_format(self):
        assert re.fullmatch(r"ORD-20260302-[0-9A-F]{6}", generate_order_number(NOW))

    def test_new_order_is_pending_with_snapshot(self, make_order):
        order = make_order()

        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.revision_limit == 3
        assert order.delivery_time_days == 5
        assert order.price == Decimal("150000")
        assert order.platform_fee == Decimal("15000")
        assert order.provider_earning == Decimal("135000")
        assert order.revision_count == 0
        assert order.order_number.startswith("ORD-20260302-")

    def test_confirmation_deadline_set(self, service, make_order):
        order = make_order()

        view = service.get_order(order.id, PROVIDER, now=NOW)

        assert view.confirmation.remaining == timedelta(hours=24)
        assert view.delivery.has_deadline is False

    def test_provider_is_notified(self, make_order, sink):
        order = make_order()

        assert sink.events[0].target_user_id == PROVIDER.user_id
        assert sink.events[0].order_id == order.id

    def test_service_without_dispatcher_uses_app_sinks(self, db):
        """Transitions made on any route reach the persisted notification feed."""
        assert OrderService(db).dispatcher is default_dispatcher

    def test_creation_is_logged(self, service, make_order):
        order = make_order()

        timeline = service.get_timeline(order.id, REQUESTER)

        assert timeline[0]["action"] == "create"
        assert timeline[0]["fromStatus"] is None
        assert timeline[0]["toStatus"] == "pending"

    def test_cannot_order_own_service(self, service):
        with pytest.raises(ValidationError) as exc_info:
            service.create_order(REQUESTER.user_id, REQUESTER.user_id, "Logo", DEFAULT_PACKAGE, now=NOW)

        assert "providerId" in exc_info.value.field_errors

    @pytest.mark.parametrize("package,field", [
        (PackageSnapshot(revision_limit=-1, delivery_time_days=3, price=Decimal("1000")), "revisionLimit"),
        (PackageSnapshot(revision_limit=1, delivery_time_days=0, price=Decimal("1000")), "deliveryTimeDays"),
        (PackageSnapshot(revision_limit=1, delivery_time_days=3, price=Decimal("0")), "price"),
    ])
    def test_invalid_package(self, service, package, field):
        with pytest.raises(ValidationError) as exc_info:
            service.create_order(REQUESTER.user_id, PROVIDER.user_id, "Logo", package, now=NOW)

        assert field in exc_info.value.field_errors


# =============================================================================
# TEST: LAZY EXPIRY
# =============================================================================

class TestLazyExpiry:
    """Pending orders past their confirmation deadline."""

    def test_read_past_deadline_persists_cancellation(self, service, make_order, sink):
        """Scenario: nobody acted for 25h; the first read rewrites the stored status."""
        order = make_order(paid=True)
        sink.events.clear()

        view = service.get_order(order.id, REQUESTER, now=PAST_DEADLINE)

        assert view.effective_status == OrderStatus.CANCELLED
        assert view.to_dict()["statusLabel"] == "Dibatalkan"
        stored = service.gateway.get_order(order.id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.cancellation_reason == "Freelancer did not confirm before the deadline"
        assert [e.target_user_id for e in sink.events] == [REQUESTER.user_id]

    def test_accept_after_deadline_fails(self, service, make_order):
        order = make_order(paid=True)

        with pytest.raises(DeadlineExpiredError):
            service.perform_action(order.id, OrderAction.ACCEPT, PROVIDER, now=PAST_DEADLINE)

    def test_no_actions_offered_after_deadline(self, service, make_order):
        order = make_order()

        before = service.view(order, PROVIDER, now=NOW + timedelta(hours=23))
        after = service.view(order, PROVIDER, now=PAST_DEADLINE)

        assert before.available_actions == [OrderAction.ACCEPT, OrderAction.REJECT]
        assert after.available_actions == []
        assert after.effective_status == OrderStatus.CANCELLED

    def test_list_uses_effective_status(self, service, make_order):
        make_order()

        cancelled = service.list_orders(REQUESTER, status=OrderStatus.CANCELLED, now=PAST_DEADLINE)
        pending = service.list_orders(REQUESTER, status=OrderStatus.PENDING, now=PAST_DEADLINE)

        assert len(cancelled) == 1
        assert pending == []


# =============================================================================
# TEST: LIFECYCLE
# =============================================================================

class TestLifecycle:
    """Happy path and role rules through OrderService."""

    def test_full_lifecycle(self, service, make_order):
        order = make_order(paid=True)

        view = service.perform_action(order.id, "accept", PROVIDER, now=NOW + timedelta(hours=1))
        assert view.effective_status == OrderStatus.ACTIVE
        assert view.order.delivery_deadline is not None

        service.perform_action(order.id, "deliver", PROVIDER, now=NOW + timedelta(days=2))
        service.request_revision(order.id, "Ganti warna", REQUESTER, now=NOW + timedelta(days=2, hours=1))
        service.perform_action(order.id, "deliver", PROVIDER, now=NOW + timedelta(days=3))
        view = service.perform_action(order.id, "accept_delivery", REQUESTER, now=NOW + timedelta(days=4))

        assert view.effective_status == OrderStatus.COMPLETED
        assert view.order.completed_at is not None
        assert view.order.revision_count == 1
        assert view.revision_disabled is True

        actions = [entry["action"] for entry in service.get_timeline(order.id, ADMIN)]
        assert actions == ["create", "accept", "deliver", "request_revision", "deliver", "accept_delivery"]

    def test_delivery_deadline_counts_from_acceptance(self, service, make_order):
        order = make_order(paid=True)
        accepted_at = NOW + timedelta(hours=3)

        view = service.perform_action(order.id, "accept", PROVIDER, now=accepted_at)

        assert view.delivery.remaining == timedelta(days=5)

    @pytest.mark.parametrize("action", ["request_revision", "refund_approved", "fly_away"])
    def test_actions_not_accepted_here(self, service, active_order, action):
        with pytest.raises(ValidationError):
            service.perform_action(active_order.id, action, REQUESTER, now=NOW + timedelta(hours=2))

    def test_requester_cannot_deliver(self, service, active_order):
        with pytest.raises(AuthorizationError):
            service.perform_action(active_order.id, "deliver", REQUESTER, now=NOW + timedelta(hours=2))

    def test_completed_order_is_terminal(self, service, delivered_order):
        service.perform_action(delivered_order.id, "accept_delivery", REQUESTER, now=NOW + timedelta(days=3))

        with pytest.raises(GuardError) as exc_info:
            service.perform_action(delivered_order.id, "deliver", PROVIDER, now=NOW + timedelta(days=4))

        assert exc_info.value.rule == "terminal_state"

    def test_stale_expected_status_is_conflict(self, service, active_order):
        """A client acting on an outdated status writes nothing and learns the stored one."""
        with pytest.raises(ConflictError) as exc_info:
            service.perform_action(active_order.id, "deliver", PROVIDER, now=NOW + timedelta(hours=2),
                                   expected_status=OrderStatus.PENDING)

        assert exc_info.value.current_status == OrderStatus.ACTIVE
        assert service.gateway.get_order(active_order.id).status == OrderStatus.ACTIVE
        assert [e["action"] for e in service.get_timeline(active_order.id, ADMIN)][-1] == "accept"

    def test_matching_expected_status_applies(self, service, active_order):
        view = service.perform_action(active_order.id, "deliver", PROVIDER, now=NOW + timedelta(hours=2),
                                      expected_status=OrderStatus.ACTIVE)

        assert view.effective_status == OrderStatus.DELIVERED


# =============================================================================
# TEST: CURRENT DEADLINE
# =============================================================================

class TestCurrentDeadline:
    """The deadline each order view carries for its status."""

    def test_pending_view_counts_down_to_auto_cancel(self, service, make_order):
        order = make_order()

        current = service.get_order(order.id, REQUESTER, now=NOW).to_dict()["currentDeadline"]

        assert current["type"] == "confirmation"
        assert current["label"] == "Batal Otomatis"
        assert current["countdown"]["remainingSeconds"] == 24 * 3600

    def test_delivered_view_counts_down_to_auto_completion(self, service, delivered_order):
        view = service.get_order(delivered_order.id, REQUESTER, now=NOW + timedelta(days=2, hours=6))

        assert view.order.delivered_at is not None
        assert view.current_deadline.kind == "auto_completion"
        assert view.current_deadline.date == NOW + timedelta(days=3)
        assert view.current_deadline.countdown.remaining == timedelta(hours=18)

    def test_revision_view_uses_later_of_request_window_and_delivery(self, service, delivered_order):
        service.request_revision(delivered_order.id, "Ganti warna", REQUESTER, now=NOW + timedelta(days=5))

        view = service.get_order(delivered_order.id, PROVIDER, now=NOW + timedelta(days=5, hours=1))

        assert view.effective_status == OrderStatus.IN_REVISION
        assert view.current_deadline.kind == "revision"
        assert view.current_deadline.date == NOW + timedelta(days=6)

    def test_completed_view_shows_completion_date(self, service, delivered_order):
        completed_at = NOW + timedelta(days=3)
        service.perform_action(delivered_order.id, "accept_delivery", REQUESTER, now=completed_at)

        current = service.get_order(delivered_order.id, REQUESTER, now=NOW + timedelta(days=4)).to_dict()

        assert current["currentDeadline"]["type"] == "completed"
        assert current["currentDeadline"]["date"] == completed_at.isoformat()
        assert current["currentDeadline"]["countdown"] is None

    def test_lapsed_pending_order_shows_cancellation(self, service, make_order):
        make_order()

        views = service.list_orders(REQUESTER, now=PAST_DEADLINE)

        assert views[0].current_deadline.kind == "cancelled"
        assert views[0].current_deadline.date == NOW + timedelta(hours=24)


# =============================================================================
# TEST: VISIBILITY
# =============================================================================

class TestVisibility:
    """Who sees which orders."""

    def test_outsider_cannot_view(self, service, make_order):
        order = make_order()

        with pytest.raises(AuthorizationError):
            service.get_order(order.id, OTHER_REQUESTER, now=NOW)

    def test_lists_are_scoped(self, service, make_order):
        make_order(title="Logo")
        service.create_order(OTHER_REQUESTER.user_id, PROVIDER.user_id, "Banner", DEFAULT_PACKAGE, now=NOW)

        assert len(service.list_orders(REQUESTER, now=NOW)) == 1
        assert len(service.list_orders(OTHER_REQUESTER, now=NOW)) == 1
        assert len(service.list_orders(PROVIDER, now=NOW)) == 2
        assert len(service.list_orders(ADMIN, now=NOW)) == 2


# =============================================================================
# TEST: PAYMENT
# =============================================================================

class TestConfirmPayment:
    """Tests for confirm_payment()."""

    def test_marks_paid_and_notifies_provider(self, service, make_order, sink):
        order = make_order()
        sink.events.clear()

        paid = service.confirm_payment(order.id, ADMIN, now=NOW)

        assert paid.payment_status == PaymentStatus.PAID
        assert paid.paid_at is not None
        assert paid.status == OrderStatus.PENDING
        assert sink.events[0].type == NotificationType.PAYMENT
        assert sink.events[0].target_user_id == PROVIDER.user_id

    def test_requester_cannot_confirm(self, service, make_order):
        order = make_order()

        with pytest.raises(AuthorizationError):
            service.confirm_payment(order.id, REQUESTER, now=NOW)

    def test_confirm_twice(self, service, make_order):
        order = make_order(paid=True)

        with pytest.raises(GuardError):
            service.confirm_payment(order.id, ADMIN, now=NOW)


# =============================================================================
# TEST: LIVE UPDATES
# =============================================================================

class TestWatch:
    """Tests for watch() and the change feed."""

    def test_updates_carry_effective_status(self, service, make_order):
        order = make_order()
        updates = []
        clock_now = [NOW]
        subscription = service.watch(ChangeFilter(order_id=order.id), updates.append, clock=lambda: clock_now[0])

        service.perform_action(order.id, "accept", PROVIDER, now=NOW + timedelta(hours=1))

        assert len(updates) == 1
        assert updates[0].kind == ChangeKind.STATUS_CHANGED
        assert updates[0].effective_status == OrderStatus.ACTIVE
        subscription.unsubscribe()

    def test_pending_past_deadline_arrives_cancelled(self, service, make_order):
        order = make_order()
        updates = []
        service.watch(ChangeFilter(order_id=order.id), updates.append, clock=lambda: PAST_DEADLINE)

        service.confirm_payment(order.id, ADMIN, now=NOW)

        assert updates[0].kind == ChangeKind.PAYMENT_CHANGED
        assert updates[0].stored_status == "pending"
        assert updates[0].effective_status == OrderStatus.CANCELLED
        assert updates[0].confirmation.expired is True

    def test_unsubscribe_stops_updates(self, service, make_order, feed):
        order = make_order()
        updates = []
        subscription = service.watch(ChangeFilter(order_id=order.id), updates.append, clock=lambda: NOW)
        subscription.unsubscribe()

        service.confirm_payment(order.id, ADMIN, now=NOW)

        assert updates == []
        assert feed.subscriber_count == 0

    def test_user_filter_matches_either_party(self, service, make_order):
        provider_sub = service.gateway.subscribe(ChangeFilter(user_id=PROVIDER.user_id))
        outsider_sub = service.gateway.subscribe(ChangeFilter(user_id=OTHER_REQUESTER.user_id))

        make_order()

        assert [e.kind for e in provider_sub.drain()] == [ChangeKind.CREATED]
        assert outsider_sub.drain() == []

    def test_failing_watcher_does_not_block_write(self, service, make_order):
        order = make_order()

        def explode(update):
            raise RuntimeError("socket closed")

        service.watch(ChangeFilter(order_id=order.id), explode, clock=lambda: NOW)

        view = service.perform_action(order.id, "accept", PROVIDER, now=NOW + timedelta(hours=1))

        assert view.effective_status == OrderStatus.ACTIVE


# =============================================================================
# TEST: DEADLINE SWEEP
# =============================================================================

class TestDeadlineSweep:
    """Tests for DeadlineSweep.run()."""

    def test_sweep_cancels_only_lapsed_orders(self, service, db, dispatcher, make_order):
        lapsed = make_order()
        fresh = make_order(now=NOW + timedelta(hours=20))

        result = DeadlineSweep(db, dispatcher).run(now=PAST_DEADLINE)

        assert result["cancelled"] == 1
        assert result["details"]["cancelled"] == [lapsed.id]
        assert service.gateway.get_order(lapsed.id).status == OrderStatus.CANCELLED
        assert service.gateway.get_order(fresh.id).status == OrderStatus.PENDING

    def test_sweep_is_idempotent(self, db, dispatcher, make_order):
        make_order()
        sweep = DeadlineSweep(db, dispatcher)

        assert sweep.run(now=PAST_DEADLINE)["cancelled"] == 1
        assert sweep.run(now=PAST_DEADLINE + timedelta(hours=1))["cancelled"] == 0

    def test_sweep_ignores_accepted_orders(self, db, dispatcher, active_order):
        result = DeadlineSweep(db, dispatcher).run(now=NOW + timedelta(days=10))

        assert result["cancelled"] == 0
        assert result["errors"] == 0

"""Tests for the order status state machine."""

from datetime import datetime, timezone

import pytest

from conftest import run
from errors import IllegalTransitionError, OrderAccessDeniedError, OrderNotFoundError, ValidationError
from schemas.orders import CustomerInfo, Order, OrderStatus, OrderTimeline, PaymentStatus
from services.order_state_machine import TRANSITIONS, allowed_targets, check_transition

ORDERED_AT = datetime(2026, 10, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def make_order(storage, product, buyer):
    def factory(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED, pidx="pidx-1"):
        return storage.seed_order(Order(
            pidx=pidx,
            product_id=product.id,
            user_id=buyer.id,
            quantity=1,
            total_amount=750.0,
            customer_info=CustomerInfo(name="Sita Sharma", email="sita@example.com"),
            status=status,
            payment_status=payment_status,
            timeline=OrderTimeline(ordered=ORDERED_AT, confirmed=ORDERED_AT),
        ))
    return factory


def event_types(storage):
    return [event.event_type for event in storage.events.all]


class TestTransitionGraph:
    def test_terminal_statuses_have_no_exits(self):
        for status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.FAILED):
            assert TRANSITIONS[status] == frozenset()

    def test_fulfillment_is_one_step_at_a_time(self):
        assert TRANSITIONS[OrderStatus.CONFIRMED] == {
            OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.FAILED,
        }
        assert TRANSITIONS[OrderStatus.DELIVERED] == {OrderStatus.REFUNDED, OrderStatus.FAILED}

    def test_purchaser_actions_by_status(self, make_order, buyer):
        assert allowed_targets(make_order(), buyer) == {OrderStatus.CANCELLED}
        delivered = make_order(OrderStatus.DELIVERED, pidx="pidx-2")
        assert allowed_targets(delivered, buyer) == {OrderStatus.REFUNDED}
        shipped = make_order(OrderStatus.SHIPPED, pidx="pidx-3")
        assert allowed_targets(shipped, buyer) == frozenset()

    def test_refund_not_offered_without_completed_payment(self, make_order, admin):
        order = make_order(OrderStatus.DELIVERED, payment_status=PaymentStatus.REFUNDED)

        assert OrderStatus.REFUNDED not in allowed_targets(order, admin)
        with pytest.raises(IllegalTransitionError) as exc:
            check_transition(order, OrderStatus.REFUNDED, admin)
        assert exc.value.message == "Refund requires a completed payment"


class TestPurchaserCancel:
    @pytest.mark.parametrize("status", [OrderStatus.CONFIRMED, OrderStatus.PROCESSING])
    def test_cancel_allowed_before_shipping(self, state_machine, storage, make_order, buyer, status):
        order = make_order(status)

        cancelled = run(state_machine.cancel(order.id, buyer, reason="Ordered the wrong size"))

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancellation_reason == "Ordered the wrong size"
        assert cancelled.timeline.cancelled is not None
        assert "ORDER_STATUS_CHANGED" in event_types(storage)

    @pytest.mark.parametrize("status", [
        OrderStatus.READY_TO_SHIP, OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED,
    ])
    def test_cancel_rejected_once_fulfillment_advanced(self, state_machine, storage, make_order, buyer, status):
        order = make_order(status)

        with pytest.raises(IllegalTransitionError) as exc:
            run(state_machine.cancel(order.id, buyer))

        assert exc.value.message == "Order can only be cancelled while in confirmed or processing status"
        assert run(storage.orders.get(order.id)).status == status

    def test_default_reason(self, state_machine, make_order, buyer):
        order = make_order()

        assert run(state_machine.cancel(order.id, buyer)).cancellation_reason == "Cancelled by user"

    def test_cannot_cancel_someone_elses_order(self, state_machine, make_order, other_buyer):
        order = make_order()

        with pytest.raises(OrderAccessDeniedError):
            run(state_machine.cancel(order.id, other_buyer))

    def test_unknown_order(self, state_machine, buyer):
        with pytest.raises(OrderNotFoundError):
            run(state_machine.cancel("missing", buyer))

    def test_purchaser_cannot_advance_fulfillment(self, state_machine, make_order, buyer):
        order = make_order()

        with pytest.raises(IllegalTransitionError) as exc:
            run(state_machine.transition(order.id, OrderStatus.PROCESSING, buyer))

        assert exc.value.message == "Only cancellation or refund can be requested"


class TestPurchaserRefund:
    def test_refund_delivered_order(self, state_machine, storage, make_order, buyer):
        order = make_order(OrderStatus.DELIVERED)

        refunded = run(state_machine.refund(order.id, buyer, reason="Arrived damaged"))

        assert refunded.status == OrderStatus.REFUNDED
        assert refunded.payment_status == PaymentStatus.REFUNDED
        assert refunded.refund_reason == "Arrived damaged"
        assert "PAYMENT_REFUNDED" in event_types(storage)

    @pytest.mark.parametrize("status", [
        OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY,
    ])
    def test_refund_rejected_before_delivery(self, state_machine, make_order, buyer, status):
        order = make_order(status)

        with pytest.raises(IllegalTransitionError) as exc:
            run(state_machine.refund(order.id, buyer))

        assert exc.value.message == "Refund can only be requested for delivered orders"

    def test_second_refund_rejected(self, state_machine, make_order, buyer):
        order = make_order(OrderStatus.DELIVERED)
        run(state_machine.refund(order.id, buyer))

        with pytest.raises(IllegalTransitionError) as exc:
            run(state_machine.refund(order.id, buyer))

        assert exc.value.message == "Order is already refunded"

    def test_refund_is_final(self, state_machine, make_order, buyer, admin):
        order = make_order(OrderStatus.DELIVERED)
        run(state_machine.refund(order.id, buyer))

        with pytest.raises(IllegalTransitionError) as exc:
            run(state_machine.update_status(order.id, "delivered", admin))
        assert exc.value.message == "Order is already refunded"

        with pytest.raises(IllegalTransitionError):
            run(state_machine.set_payment_status(order.id, "completed", admin))


class TestAdminFulfillment:
    def test_walks_the_fulfillment_path(self, state_machine, make_order, admin):
        order = make_order()

        for status in ("processing", "ready_to_ship", "shipped", "out_for_delivery", "delivered"):
            order = run(state_machine.update_status(order.id, status, admin))

        assert order.status == OrderStatus.DELIVERED
        assert order.timeline.delivered is not None
        assert order.shipping.actual_delivery == order.timeline.delivered
        assert order.timeline.ordered == ORDERED_AT

    def test_skipping_a_step_rejected(self, state_machine, make_order, admin):
        order = make_order()

        with pytest.raises(IllegalTransitionError):
            run(state_machine.update_status(order.id, "shipped", admin))

    def test_cancelled_order_cannot_reopen(self, state_machine, make_order, buyer, admin):
        order = make_order()
        run(state_machine.cancel(order.id, buyer))

        with pytest.raises(IllegalTransitionError) as exc:
            run(state_machine.update_status(order.id, "processing", admin))

        assert exc.value.message == "Order is already cancelled"

    def test_admin_marks_failed(self, state_machine, make_order, admin):
        order = make_order(OrderStatus.SHIPPED)

        failed = run(state_machine.fail(order.id, admin, notes="Lost by carrier"))

        assert failed.status == OrderStatus.FAILED
        assert failed.notes == "Lost by carrier"

    def test_invalid_status_value(self, state_machine, make_order, admin):
        order = make_order()

        with pytest.raises(ValidationError) as exc:
            run(state_machine.update_status(order.id, "teleported", admin))

        assert exc.value.message == "Invalid status"

    def test_existing_timeline_stamp_kept(self, state_machine, make_order, admin):
        order = make_order()

        updated = run(state_machine.update_status(order.id, "processing", admin))

        assert updated.timeline.confirmed == ORDERED_AT


class TestShippingAndNotes:
    def test_tracking_number_ships_ready_order(self, state_machine, storage, make_order, admin):
        order = make_order(OrderStatus.READY_TO_SHIP)

        updated = run(state_machine.update_shipping(
            order.id, admin, carrier="Nepal Can Move", tracking_number="NCM-884211",
        ))

        assert updated.status == OrderStatus.SHIPPED
        assert updated.shipping.carrier == "Nepal Can Move"
        assert updated.timeline.shipped is not None
        assert event_types(storage) == ["ORDER_SHIPPING_UPDATED", "ORDER_STATUS_CHANGED"]

    def test_tracking_number_on_processing_order_keeps_status(self, state_machine, make_order, admin):
        order = make_order(OrderStatus.PROCESSING)

        updated = run(state_machine.update_shipping(order.id, admin, tracking_number="NCM-1"))

        assert updated.status == OrderStatus.PROCESSING
        assert updated.shipping.tracking_number == "NCM-1"

    def test_shipping_on_terminal_order_rejected(self, state_machine, make_order, admin):
        order = make_order(OrderStatus.CANCELLED)

        with pytest.raises(IllegalTransitionError):
            run(state_machine.update_shipping(order.id, admin, carrier="Pathao"))

    def test_notes_required(self, state_machine, make_order, admin):
        order = make_order()

        with pytest.raises(ValidationError):
            run(state_machine.add_notes(order.id, "   ", admin))

        assert run(state_machine.add_notes(order.id, "Gift wrap", admin)).notes == "Gift wrap"


class TestConcurrentTransitions:
    def test_stale_write_loses(self, state_machine, storage, make_order, buyer, monkeypatch):
        order = make_order()
        real_get = storage.orders.get

        async def get_then_admin_moves_it(order_id):
            snapshot = await real_get(order_id)
            storage.seed_order(snapshot.model_copy(update={"status": OrderStatus.PROCESSING}))
            return snapshot

        monkeypatch.setattr(storage.orders, "get", get_then_admin_moves_it)

        with pytest.raises(IllegalTransitionError) as exc:
            run(state_machine.cancel(order.id, buyer))

        assert exc.value.message == "Order status changed concurrently; reload and retry"
        assert "TRANSITION_CONFLICT" in event_types(storage)
        assert run(real_get(order.id)).status == OrderStatus.PROCESSING

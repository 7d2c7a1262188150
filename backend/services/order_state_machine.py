"""
Order Status State Machine
==========================
The only way an existing order changes.

    confirmed -> processing -> ready_to_ship -> shipped -> out_for_delivery -> delivered
    confirmed | processing -> cancelled
    delivered -> refunded            (payment_status must be completed)
    any non-terminal -> failed       (admin only)

cancelled, refunded and failed are terminal. Each transition stamps the
timeline entry of the new status once; existing stamps are never rewritten.
A refund also flips payment_status to refunded, and nothing flips it back.

Who may do what:
- purchaser: cancel from confirmed/processing, refund from delivered
  (completed payment), on their own orders only
- admin: any edge above, on any order

Writes are compare-and-set on the prior status, so of two concurrent
transitions from the same state exactly one lands.
"""

from datetime import datetime
from typing import Optional

import structlog

from errors import (
    IllegalTransitionError,
    OrderAccessDeniedError,
    OrderNotFoundError,
    ValidationError,
)
from schemas.base import utcnow
from schemas.orders import (
    Order,
    OrderStatus,
    OrderView,
    PaymentStatus,
    ShippingInfo,
    TERMINAL_STATUSES,
)
from schemas.products import ProductSummary
from schemas.users import Actor
from storage.base import Storage

COMPONENT = "order_state_machine"


# =============================================================================
# TRANSITION GRAPH
# =============================================================================

FULFILLMENT_PATH = (
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.READY_TO_SHIP,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)

CANCELLABLE = frozenset({OrderStatus.CONFIRMED, OrderStatus.PROCESSING})


def _build_graph() -> dict[OrderStatus, frozenset[OrderStatus]]:
    graph: dict[OrderStatus, set[OrderStatus]] = {status: set() for status in OrderStatus}
    for current, following in zip(FULFILLMENT_PATH, FULFILLMENT_PATH[1:]):
        graph[current].add(following)
    for status in CANCELLABLE:
        graph[status].add(OrderStatus.CANCELLED)
    graph[OrderStatus.DELIVERED].add(OrderStatus.REFUNDED)
    for status in OrderStatus:
        if status not in TERMINAL_STATUSES:
            graph[status].add(OrderStatus.FAILED)
    return {status: frozenset(targets) for status, targets in graph.items()}


TRANSITIONS = _build_graph()


def allowed_targets(order: Order, actor: Actor) -> frozenset[OrderStatus]:
    """Statuses ``actor`` could move ``order`` to right now."""
    targets = set(TRANSITIONS[order.status])
    if order.payment_status != PaymentStatus.COMPLETED:
        targets.discard(OrderStatus.REFUNDED)
    if not actor.is_admin:
        targets &= {OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    return frozenset(targets)


def check_transition(order: Order, target: OrderStatus, actor: Actor):
    """Raise IllegalTransitionError unless ``actor`` may move ``order`` to ``target``."""
    current = order.status.value

    if order.status in TERMINAL_STATUSES:
        raise IllegalTransitionError(current, target.value, f"Order is already {current}")

    if not actor.is_admin:
        if target == OrderStatus.CANCELLED and order.status not in CANCELLABLE:
            raise IllegalTransitionError(
                current, target.value,
                "Order can only be cancelled while in confirmed or processing status",
            )
        if target == OrderStatus.REFUNDED and order.status != OrderStatus.DELIVERED:
            raise IllegalTransitionError(
                current, target.value, "Refund can only be requested for delivered orders"
            )
        if target not in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            raise IllegalTransitionError(
                current, target.value, "Only cancellation or refund can be requested"
            )

    if target == OrderStatus.REFUNDED and order.payment_status != PaymentStatus.COMPLETED:
        raise IllegalTransitionError(
            current, target.value, "Refund requires a completed payment"
        )

    if target not in TRANSITIONS[order.status]:
        raise IllegalTransitionError(current, target.value)


def apply_transition(
    order: Order,
    target: OrderStatus,
    at: datetime,
    reason: Optional[str] = None,
) -> Order:
    """Return a copy of ``order`` moved to ``target``. Does not validate."""
    update = {
        "status": target,
        "timeline": order.timeline.stamp(target, at),
        "updated_at": at,
    }
    if target == OrderStatus.CANCELLED:
        update["cancellation_reason"] = reason
    elif target == OrderStatus.REFUNDED:
        update["refund_reason"] = reason
        update["payment_status"] = PaymentStatus.REFUNDED
    elif target == OrderStatus.DELIVERED and order.shipping.actual_delivery is None:
        update["shipping"] = order.shipping.model_copy(update={"actual_delivery": at})
    return order.model_copy(update=update)


def parse_status(value: Optional[str]) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(
            "Invalid status",
            {"status": value, "validStatuses": [s.value for s in OrderStatus]},
        )


# =============================================================================
# STATE MACHINE SERVICE
# =============================================================================

class OrderStateMachine:
    """
    Applies transitions and admin fulfillment actions to stored orders.

    Example:
        machine = OrderStateMachine(storage)
        await machine.cancel(order_id, actor, reason="Changed my mind")
        await machine.transition(order_id, OrderStatus.PROCESSING, admin)
    """

    def __init__(self, storage: Storage):
        self.storage = storage
        self._log = structlog.get_logger().bind(component=COMPONENT)

    async def _load(self, order_id: str, actor: Actor) -> Order:
        order = await self.storage.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id=order_id)
        if not actor.is_admin and not actor.owns(order.user_id):
            self._log.warning("order_access_denied", order_id=order_id, user_id=actor.id)
            raise OrderAccessDeniedError(order_id)
        return order

    async def _view(self, order: Order) -> OrderView:
        product = await self.storage.products.get(order.product_id)
        return OrderView.build(order, ProductSummary.from_product(product) if product else None)

    async def _store(self, updated: Order, previous: Order, actor: Actor):
        """Compare-and-set on the prior status."""
        stored = await self.storage.orders.compare_and_set(updated, expected_status=previous.status)
        if stored:
            return
        latest = await self.storage.orders.get(previous.id)
        current = latest.status.value if latest else previous.status.value
        await self.storage.events.record(
            "TRANSITION_CONFLICT",
            {"expected": previous.status.value, "found": current,
             "requested": updated.status.value, "actor_id": actor.id},
            order_id=previous.id,
            component=COMPONENT,
            severity="WARN",
        )
        raise IllegalTransitionError(
            current, updated.status.value, "Order status changed concurrently; reload and retry"
        )

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        actor: Actor,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> OrderView:
        order = await self._load(order_id, actor)
        log = self._log.bind(order_id=order_id, actor_id=actor.id, role=actor.role.value)

        try:
            check_transition(order, target, actor)
        except IllegalTransitionError as e:
            log.info("transition_rejected",
                     current=order.status.value, requested=target.value, reason=e.message)
            raise

        updated = apply_transition(order, target, utcnow(), reason)
        if notes:
            updated = updated.model_copy(update={"notes": notes})
        await self._store(updated, order, actor)

        await self.storage.events.record(
            "ORDER_STATUS_CHANGED",
            {"from_status": order.status.value, "to_status": target.value,
             "actor_id": actor.id, "role": actor.role.value},
            order_id=order_id,
            component=COMPONENT,
        )
        if target == OrderStatus.REFUNDED:
            await self.storage.events.record(
                "PAYMENT_REFUNDED",
                {"pidx": order.pidx, "total_amount": order.total_amount, "reason": reason},
                order_id=order_id,
                component=COMPONENT,
            )

        log.info("order_status_changed", from_status=order.status.value, to_status=target.value)
        return await self._view(updated)

    async def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> OrderView:
        default = "Cancelled by admin" if actor.is_admin else "Cancelled by user"
        return await self.transition(order_id, OrderStatus.CANCELLED, actor, reason=reason or default)

    async def refund(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> OrderView:
        default = "Refund processed by admin" if actor.is_admin else "Refund requested by user"
        return await self.transition(order_id, OrderStatus.REFUNDED, actor, reason=reason or default)

    async def fail(self, order_id: str, actor: Actor, notes: Optional[str] = None) -> OrderView:
        return await self.transition(order_id, OrderStatus.FAILED, actor, notes=notes)

    # =========================================================================
    # ADMIN FULFILLMENT ACTIONS
    # =========================================================================

    async def update_status(
        self,
        order_id: str,
        status: Optional[str],
        actor: Actor,
        notes: Optional[str] = None,
    ) -> OrderView:
        target = parse_status(status)
        if target == OrderStatus.CANCELLED:
            return await self.transition(order_id, target, actor, reason="Cancelled by admin", notes=notes)
        if target == OrderStatus.REFUNDED:
            return await self.transition(order_id, target, actor, reason="Refund processed by admin", notes=notes)
        return await self.transition(order_id, target, actor, notes=notes)

    async def set_payment_status(self, order_id: str, payment_status: Optional[str], actor: Actor) -> OrderView:
        try:
            requested = PaymentStatus(payment_status)
        except ValueError:
            raise ValidationError(
                "Invalid payment status",
                {"paymentStatus": payment_status,
                 "validPaymentStatuses": [s.value for s in PaymentStatus]},
            )

        if requested == PaymentStatus.REFUNDED:
            return await self.refund(order_id, actor)

        order = await self._load(order_id, actor)
        if order.payment_status == PaymentStatus.REFUNDED:
            raise IllegalTransitionError(
                order.status.value, order.status.value, "A refunded payment cannot be reverted"
            )
        return await self._view(order)

    async def update_shipping(
        self,
        order_id: str,
        actor: Actor,
        carrier: Optional[str] = None,
        tracking_number: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
    ) -> OrderView:
        order = await self._load(order_id, actor)
        if order.status in TERMINAL_STATUSES:
            raise IllegalTransitionError(
                order.status.value, order.status.value,
                f"Cannot update shipping on a {order.status.value} order",
            )

        changes = {
            key: value
            for key, value in (
                ("carrier", carrier),
                ("tracking_number", tracking_number),
                ("estimated_delivery", estimated_delivery),
            )
            if value is not None
        }
        shipping: ShippingInfo = order.shipping.model_copy(update=changes)
        now = utcnow()
        updated = order.model_copy(update={"shipping": shipping, "updated_at": now})

        if tracking_number and order.status == OrderStatus.READY_TO_SHIP:
            updated = apply_transition(updated, OrderStatus.SHIPPED, now)

        await self._store(updated, order, actor)
        await self.storage.events.record(
            "ORDER_SHIPPING_UPDATED",
            {"carrier": shipping.carrier, "tracking_number": shipping.tracking_number,
             "to_status": updated.status.value},
            order_id=order_id,
            component=COMPONENT,
        )
        if updated.status != order.status:
            await self.storage.events.record(
                "ORDER_STATUS_CHANGED",
                {"from_status": order.status.value, "to_status": updated.status.value,
                 "actor_id": actor.id, "role": actor.role.value},
                order_id=order_id,
                component=COMPONENT,
            )
        self._log.info("order_shipping_updated", order_id=order_id, status=updated.status.value)
        return await self._view(updated)

    async def add_notes(self, order_id: str, notes: Optional[str], actor: Actor) -> OrderView:
        if not notes or not notes.strip():
            raise ValidationError("Notes are required")
        order = await self._load(order_id, actor)
        updated = order.model_copy(update={"notes": notes, "updated_at": utcnow()})
        await self._store(updated, order, actor)
        await self.storage.events.record(
            "ORDER_NOTES_UPDATED",
            {"actor_id": actor.id},
            order_id=order_id,
            component=COMPONENT,
        )
        return await self._view(updated)

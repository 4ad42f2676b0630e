# Overview: Service-layer operations for the order lifecycle; status transitions, cancellation and per-item status.

"""
Order State Machine

================================================================================
STATES:  pending -> processing -> shipped -> delivered
         pending | processing -> cancelled
================================================================================

RULES:
1. Forward only. A transition may skip states (simplified flows) but never
   goes back, and restating the current status is rejected.
2. cancelled is terminal. Restating cancelled is an idempotent no-op.
3. cancelled is reachable from pending or processing only.
4. A payment-failed order (payment_status == failed) can only be cancelled.

SIDE EFFECTS (same transaction as the status change):
- -> processing (payment success): payment_status paid, paid_at set,
  PaymentTransaction success, buyer notified.
- -> shipped: non-cancelled lines marked shipped, buyer notified with the
  carrier/tracking metadata.
- -> delivered: remaining processing lines marked shipped, a still-pending
  payment is finalised to paid (pay on delivery), buyer notified of
  delivery and payment.
- -> cancelled: every non-cancelled line releases its reservation and
  gives back its sold_units; a paid order gets a pending refund record;
  buyer notified with the reason.

Authorization is checked by the guard helpers below. Admins may drive any
order, a vendor only orders (or lines) that are entirely its own, and the
buyer may only cancel.

Notifications are written in the transaction and delivered after commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..errors import Forbidden, InvalidTransition, NotFoundError, OrderNotFound, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, PaymentTransaction, Product
from ..models.orders import (
    ITEM_STATUSES,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_STATUSES,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
)
from ..models.payments import TXN_FAILED, TXN_PENDING, TXN_SUCCESS, TXN_TYPE_PAYMENT, TXN_TYPE_REFUND
from app.time_utils import epoch_millis, utcnow
from . import communications_service
from .concurrency import lock_for_update, run_with_retry, transaction_scope
from .identifier_service import generate_payment_reference, generate_refund_reference
from .session_service import Actor
from .stock_service import UNIT_COMBINATION, UNIT_INVENTORY, StockUnit, release


FULFILLMENT_RANK = {
    ORDER_PENDING: 0,
    ORDER_PROCESSING: 1,
    ORDER_SHIPPED: 2,
    ORDER_DELIVERED: 3,
}
CANCELLABLE_STATUSES = {ORDER_PENDING, ORDER_PROCESSING}


@dataclass
class TransitionResult:
    order_id: int
    previous_status: str
    order_status: str
    payment_status: str
    changed: bool
    notifications: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "previous_status": self.previous_status,
            "order_status": self.order_status,
            "payment_status": self.payment_status,
            "changed": self.changed,
        }


@dataclass
class ItemStatusResult:
    item: dict
    order_status: str
    order_promoted: bool
    notifications: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "item": self.item,
            "order_status": self.order_status,
            "order_promoted": self.order_promoted,
        }


# =============================================================================
# TRANSITION RULES
# =============================================================================

def validate_status(status: str) -> None:
    if status not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(ORDER_STATUSES)}",
            details={"status": status},
        )


def validate_transition(current: str, requested: str, payment_status: str | None = None) -> bool:
    """
    Check a transition against the state machine.

    Returns True for a real change and False for the idempotent
    cancelled -> cancelled restatement. Raises InvalidTransition otherwise.
    """
    validate_status(requested)

    if current == ORDER_CANCELLED:
        if requested == ORDER_CANCELLED:
            return False
        raise InvalidTransition(
            "Cancelled orders cannot change status",
            current=current,
            requested=requested,
        )

    if requested == ORDER_CANCELLED:
        if current not in CANCELLABLE_STATUSES:
            raise InvalidTransition(
                f"Order cannot be cancelled once it is {current}",
                current=current,
                requested=requested,
            )
        return True

    if payment_status == PAYMENT_FAILED:
        raise InvalidTransition(
            "Orders with a failed payment can only be cancelled",
            current=current,
            requested=requested,
            details={"payment_status": payment_status},
        )

    if FULFILLMENT_RANK[requested] <= FULFILLMENT_RANK[current]:
        raise InvalidTransition(
            f"Cannot move order from {current} to {requested}",
            current=current,
            requested=requested,
        )
    return True


# =============================================================================
# AUTHORIZATION GUARDS
# =============================================================================

def _order_vendor_ids(order_id: int) -> set[int]:
    return {
        vid for (vid,) in db.session.query(OrderItem.vendor_id).filter_by(order_id=order_id).distinct()
    }


def guard_status_change(order: Order, actor: Actor) -> None:
    """Admins, or a vendor whose lines make up the whole order."""
    if actor.is_admin:
        return
    if actor.vendor_id is not None:
        vendor_ids = _order_vendor_ids(order.id)
        if vendor_ids == {actor.vendor_id}:
            return
        if actor.vendor_id in vendor_ids:
            raise Forbidden(
                "Order contains items from other vendors; update your own items instead",
                details={"order_id": order.id},
            )
    raise Forbidden("You are not allowed to change this order's status", details={"order_id": order.id})


def guard_cancel(order: Order, actor: Actor) -> None:
    """The buyer (while cancellable), an admin, or a vendor owning every line."""
    if actor.is_admin:
        return
    if order.user_id == actor.user_id:
        if order.order_status not in CANCELLABLE_STATUSES and order.order_status != ORDER_CANCELLED:
            raise InvalidTransition(
                f"Order cannot be cancelled once it is {order.order_status}",
                current=order.order_status,
                requested=ORDER_CANCELLED,
            )
        return
    guard_status_change(order, actor)


def guard_item_update(item: OrderItem, actor: Actor) -> None:
    if actor.is_admin:
        return
    if actor.vendor_id is not None and item.vendor_id == actor.vendor_id:
        return
    raise Forbidden("You can only update your own order items", details={"order_item_id": item.id})


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _visible_to(order: Order, actor: Actor) -> bool:
    if actor.is_admin or order.user_id == actor.user_id:
        return True
    return actor.vendor_id is not None and actor.vendor_id in _order_vendor_ids(order.id)


# =============================================================================
# SIDE EFFECTS
# =============================================================================

def _item_unit(item: OrderItem) -> StockUnit:
    if item.combination_id is not None:
        return StockUnit(UNIT_COMBINATION, item.combination_id, item.product_id)
    return StockUnit(UNIT_INVENTORY, item.inventory_id, item.product_id)


def _restore_line(item: OrderItem, *, actor_user_id: int | None, reason: str | None) -> None:
    """Release one line's reservation and sold_units. Called once per line."""
    release(
        _item_unit(item),
        item.quantity,
        actor_user_id=actor_user_id,
        order_id=item.order_id,
        reason=reason,
    )
    db.session.query(Product).filter(Product.id == item.product_id).update(
        {Product.sold_units: Product.sold_units - item.quantity},
        synchronize_session=False,
    )


def _mark_item(item: OrderItem, status: str, notes: str | None = None) -> None:
    item.status = status
    item.status_updated_at = utcnow()
    if notes is not None:
        item.status_notes = notes


def _refunded_amount(order_id: int) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(PaymentTransaction.amount), 0))
        .filter(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.transaction_type == TXN_TYPE_REFUND,
            PaymentTransaction.status != TXN_FAILED,
        )
        .scalar()
    )
    return Decimal(str(total)).quantize(Decimal("0.01"))


def _record_refund(order: Order, amount: Decimal, description: str):
    """Pending refund for part or all of a paid order. Returns the refund notification."""
    now_ms = epoch_millis()
    reference = generate_refund_reference(order.id, now_ms=now_ms)
    # References are unique; a second refund in the same millisecond takes the next one.
    while db.session.query(PaymentTransaction.id).filter_by(reference=reference).first() is not None:
        now_ms += 1
        reference = generate_refund_reference(order.id, now_ms=now_ms)
    db.session.add(
        PaymentTransaction(
            user_id=order.user_id,
            order_id=order.id,
            transaction_type=TXN_TYPE_REFUND,
            amount=amount,
            currency=current_app.config.get("PAYMENT_CURRENCY", "NGN"),
            status=TXN_PENDING,
            reference=reference,
            payment_gateway=order.payment_method,
            description=description,
        )
    )
    return communications_service.refund_initiated(order, reference, amount)


def _cancel_locked(order: Order, *, actor_user_id: int | None, reason: str | None) -> list:
    """
    Cancellation side effects. Lines already cancelled were restored when they were cancelled.

    A paid order is refunded whatever earlier line refunds left over.
    """
    items = (
        db.session.query(OrderItem)
        .filter(OrderItem.order_id == order.id, OrderItem.status != ORDER_CANCELLED)
        .all()
    )
    for item in sorted(items, key=lambda i: _item_unit(i).sort_key):
        _restore_line(item, actor_user_id=actor_user_id, reason=reason)
        _mark_item(item, ORDER_CANCELLED, reason)

    now = utcnow()
    order.order_status = ORDER_CANCELLED
    order.cancelled_at = now
    order.cancelled_by_user_id = actor_user_id
    order.cancellation_reason = reason

    notifications = [communications_service.order_cancelled(order, reason)]

    if order.payment_status == PAYMENT_PAID:
        outstanding = order.total_amount - _refunded_amount(order.id)
        if outstanding > 0:
            notifications.append(
                _record_refund(order, outstanding, f"Refund for cancelled order {order.order_number}")
            )

    db.session.flush()
    return notifications


def _finalize_cash_payment(order: Order) -> list:
    """Delivery of an unpaid order settles it (pay on delivery)."""
    now = utcnow()
    txn = None
    if order.payment_reference:
        txn = (
            db.session.query(PaymentTransaction)
            .filter_by(reference=order.payment_reference, transaction_type=TXN_TYPE_PAYMENT)
            .first()
        )
    if txn is None:
        reference = generate_payment_reference(order.id)
        txn = PaymentTransaction(
            user_id=order.user_id,
            order_id=order.id,
            transaction_type=TXN_TYPE_PAYMENT,
            amount=order.total_amount,
            currency=current_app.config.get("PAYMENT_CURRENCY", "NGN"),
            reference=reference,
            payment_gateway=order.payment_method,
            description=f"Payment collected on delivery for order {order.order_number}",
        )
        db.session.add(txn)
        order.payment_reference = reference
    txn.status = TXN_SUCCESS
    txn.resolved_at = now

    order.payment_status = PAYMENT_PAID
    order.paid_at = now
    return [communications_service.payment_received(order, txn.reference)]


def apply_payment_success_locked(order: Order, txn: PaymentTransaction) -> list:
    """
    pending -> processing on a verified payment. Caller holds the order lock.

    Returns the notifications written; an empty list means nothing changed
    (already paid, or the order can no longer accept a payment).
    """
    now = utcnow()
    if txn.status != TXN_SUCCESS:
        txn.status = TXN_SUCCESS
        txn.resolved_at = now

    if order.payment_status == PAYMENT_PAID:
        return []
    if order.payment_status == PAYMENT_FAILED or order.order_status == ORDER_CANCELLED:
        current_app.logger.warning(
            "Payment %s succeeded for order %s in state %s/%s; order left unchanged",
            txn.reference,
            order.id,
            order.order_status,
            order.payment_status,
        )
        return []

    order.payment_status = PAYMENT_PAID
    order.paid_at = now
    if order.payment_reference != txn.reference:
        order.payment_reference = txn.reference

    notifications = [communications_service.payment_received(order, txn.reference)]
    if order.order_status == ORDER_PENDING:
        order.order_status = ORDER_PROCESSING
        notifications.append(communications_service.order_status_changed(order, ORDER_PROCESSING))
    db.session.flush()
    return notifications


def _apply_transition_locked(order: Order, requested: str, *, actor_user_id: int | None, notes: str | None,
                             metadata: dict | None) -> list:
    if requested == ORDER_CANCELLED:
        return _cancel_locked(order, actor_user_id=actor_user_id, reason=notes)

    notifications = []
    order.order_status = requested

    if requested in (ORDER_SHIPPED, ORDER_DELIVERED):
        items = (
            db.session.query(OrderItem)
            .filter(OrderItem.order_id == order.id, OrderItem.status == ORDER_PROCESSING)
            .all()
        )
        for item in items:
            _mark_item(item, ORDER_SHIPPED, notes)

    if requested == ORDER_DELIVERED and order.payment_status == PAYMENT_PENDING:
        notifications.extend(_finalize_cash_payment(order))

    event_metadata = dict(metadata or {})
    if notes:
        event_metadata["notes"] = notes
    notifications.insert(0, communications_service.order_status_changed(order, requested, metadata=event_metadata))
    db.session.flush()
    return notifications


# =============================================================================
# OPERATIONS
# =============================================================================

def transition_order(
    order_id: int,
    requested: str,
    actor: Actor,
    *,
    notes: str | None = None,
    metadata: dict | None = None,
) -> TransitionResult:
    """
    Drive the order header to a new status (admin or owning vendor).

    metadata carries shipment details (carrier, tracking_number) for the
    buyer notification.
    """
    validate_status(requested)

    def _op():
        with transaction_scope(write_lock=True):
            order = _lock_order(order_id)
            if not _visible_to(order, actor):
                raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
            guard_status_change(order, actor)

            previous = order.order_status
            changed = validate_transition(previous, requested, order.payment_status)
            notifications = []
            if changed:
                notifications = _apply_transition_locked(
                    order, requested, actor_user_id=actor.user_id, notes=notes, metadata=metadata
                )
            result = TransitionResult(
                order_id=order.id,
                previous_status=previous,
                order_status=order.order_status,
                payment_status=order.payment_status,
                changed=changed,
                notifications=notifications,
            )
        return result

    result = run_with_retry(_op)
    if result.changed:
        current_app.logger.info(
            "Order %s moved %s -> %s by user %s", order_id, result.previous_status, result.order_status, actor.user_id
        )
    communications_service.deliver(result.notifications)
    return result


def cancel_order(order_id: int, actor: Actor, *, reason: str | None = None) -> TransitionResult:
    """
    Cancel an order and restore everything it reserved.

    Cancelling an already-cancelled order returns changed=False and has no
    side effects.
    """
    def _op():
        with transaction_scope(write_lock=True):
            order = _lock_order(order_id)
            if not _visible_to(order, actor):
                raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
            guard_cancel(order, actor)

            previous = order.order_status
            changed = validate_transition(previous, ORDER_CANCELLED, order.payment_status)
            notifications = []
            if changed:
                notifications = _cancel_locked(order, actor_user_id=actor.user_id, reason=reason)
            result = TransitionResult(
                order_id=order.id,
                previous_status=previous,
                order_status=order.order_status,
                payment_status=order.payment_status,
                changed=changed,
                notifications=notifications,
            )
        return result

    result = run_with_retry(_op)
    if result.changed:
        current_app.logger.info("Order %s cancelled by user %s", order_id, actor.user_id)
    communications_service.deliver(result.notifications)
    return result


ITEM_RANK = {ORDER_PROCESSING: 0, ORDER_SHIPPED: 1}


def _validate_item_transition(current: str, requested: str, order: Order) -> bool:
    if requested not in ITEM_STATUSES:
        raise ValidationError(
            f"Invalid item status '{requested}'. Must be one of: {', '.join(ITEM_STATUSES)}",
            details={"status": requested},
        )
    if current == ORDER_CANCELLED:
        if requested == ORDER_CANCELLED:
            return False
        raise InvalidTransition("Cancelled items cannot change status", current=current, requested=requested)
    if order.order_status == ORDER_CANCELLED:
        raise InvalidTransition(
            "Items of a cancelled order cannot change status",
            current=current,
            requested=requested,
            details={"order_status": order.order_status},
        )
    if order.order_status == ORDER_DELIVERED:
        raise InvalidTransition(
            "Items of a delivered order cannot change status",
            current=current,
            requested=requested,
            details={"order_status": order.order_status},
        )
    if requested == ORDER_CANCELLED:
        if current != ORDER_PROCESSING:
            raise InvalidTransition(f"Item cannot be cancelled once it is {current}", current=current,
                                    requested=requested)
        if order.order_status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(
                f"Items of a {order.order_status} order cannot be cancelled",
                current=current,
                requested=requested,
                details={"order_status": order.order_status},
            )
        return True
    if order.payment_status == PAYMENT_FAILED:
        raise InvalidTransition(
            "Items of an order with a failed payment can only be cancelled",
            current=current,
            requested=requested,
            details={"payment_status": order.payment_status},
        )
    if ITEM_RANK[requested] <= ITEM_RANK[current]:
        raise InvalidTransition(f"Cannot move item from {current} to {requested}", current=current,
                                requested=requested)
    return True


def _promote_order_locked(order: Order, *, actor_user_id: int | None) -> tuple[bool, list]:
    """When every line shares one status, move the header to it if the state machine allows."""
    statuses = {s for (s,) in db.session.query(OrderItem.status).filter_by(order_id=order.id).distinct()}
    if len(statuses) != 1:
        return False, []
    target = statuses.pop()
    if target == order.order_status:
        return False, []
    try:
        changed = validate_transition(order.order_status, target, order.payment_status)
    except InvalidTransition:
        return False, []
    if not changed:
        return False, []
    if target == ORDER_CANCELLED:
        return True, _cancel_locked(order, actor_user_id=actor_user_id, reason="All items cancelled")
    order.order_status = target
    return True, [communications_service.order_status_changed(order, target)]


def update_item_status(
    item_id: int,
    requested: str,
    actor: Actor,
    *,
    notes: str | None = None,
) -> ItemStatusResult:
    """
    Vendor-scoped status change for one order line.

    A cancelled line gives back its stock and sold_units immediately; on a paid
    order it also gets a pending refund for its sub_total.
    """
    def _op():
        with transaction_scope(write_lock=True):
            item_row = db.session.query(OrderItem).filter_by(id=item_id).first()
            if item_row is None:
                raise NotFoundError(f"Order item {item_id} not found", details={"order_item_id": item_id})
            guard_item_update(item_row, actor)

            order = _lock_order(item_row.order_id)
            item = lock_for_update(db.session.query(OrderItem).filter_by(id=item_id)).first()

            changed = _validate_item_transition(item.status, requested, order)
            notifications = []
            promoted = False
            if changed:
                if requested == ORDER_CANCELLED:
                    _restore_line(item, actor_user_id=actor.user_id, reason=notes or "Item cancelled")
                _mark_item(item, requested, notes)
                db.session.flush()
                notifications.append(communications_service.item_status_changed(order, item, requested))
                promoted, promoted_notifications = _promote_order_locked(order, actor_user_id=actor.user_id)
                notifications.extend(promoted_notifications)
                # A cancelled header already refunded the whole outstanding balance.
                if (requested == ORDER_CANCELLED and order.order_status != ORDER_CANCELLED
                        and order.payment_status == PAYMENT_PAID):
                    notifications.append(_record_refund(
                        order, item.sub_total, f"Refund for cancelled item {item.id} of order {order.order_number}"
                    ))
                db.session.flush()

            result = ItemStatusResult(
                item=item.to_dict(),
                order_status=order.order_status,
                order_promoted=promoted,
                notifications=notifications,
            )
        return result

    result = run_with_retry(_op)
    communications_service.deliver(result.notifications)
    return result

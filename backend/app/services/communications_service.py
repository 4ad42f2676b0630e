# Overview: Service-layer operations for notifications; in-app rows plus e-mail hand-off.

"""
Notification Service

Two phases:
1. notify() writes a Notification row inside the caller's unit of work.
   A dedupe_key makes the row idempotent: a second notify() with the same
   key is a no-op, so re-running a verification never notifies twice.
2. deliver() runs AFTER commit and hands e-mail payloads to the dispatcher
   registered at app.extensions["notification_dispatcher"]. Dispatch is
   fire-and-forget: failures are logged, never raised.

The default dispatcher only logs; deployments register a real mail sender.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Notification, User, Vendor
from app.time_utils import utcnow


TYPE_ORDER_CREATED = "order_created"
TYPE_VENDOR_NEW_ORDER = "vendor_new_order"
TYPE_PAYMENT_RECEIVED = "payment_received"
TYPE_PAYMENT_FAILED = "payment_failed"
TYPE_ORDER_PROCESSING = "order_processing"
TYPE_ORDER_SHIPPED = "order_shipped"
TYPE_ORDER_DELIVERED = "order_delivered"
TYPE_ORDER_CANCELLED = "order_cancelled"
TYPE_ITEM_STATUS = "order_item_status"
TYPE_REFUND_INITIATED = "refund_initiated"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str
    template: str
    context: dict = field(default_factory=dict)


def log_dispatcher(message: EmailMessage) -> None:
    current_app.logger.info("Email queued to=%s subject=%s template=%s", message.to, message.subject, message.template)


def _dispatcher():
    dispatcher = current_app.extensions.get("notification_dispatcher")
    return log_dispatcher if dispatcher is None else dispatcher


def notify(
    user_id: int,
    notification_type: str,
    message: str,
    *,
    payload: dict | None = None,
    dedupe_key: str | None = None,
    email_subject: str | None = None,
) -> Notification | None:
    """
    Add a notification row to the current session (no commit).

    Returns None when a row with the same dedupe_key already exists.
    email_subject marks the notification for e-mail delivery.
    """
    if dedupe_key is not None:
        existing = db.session.query(Notification.id).filter_by(dedupe_key=dedupe_key).first()
        if existing is not None:
            return None

    body = dict(payload or {})
    if email_subject:
        body["email_subject"] = email_subject

    notification = Notification(
        user_id=user_id,
        notification_type=notification_type,
        message=message,
        payload=body,
        dedupe_key=dedupe_key,
        is_read=False,
        created_at=utcnow(),
    )
    db.session.add(notification)
    db.session.flush()
    return notification


def deliver(notifications) -> int:
    """
    Dispatch e-mails for committed notifications. Returns the number sent.

    Accepts Notification rows or ids; None entries (deduped) are skipped.
    """
    ids = [n if isinstance(n, int) else n.id for n in notifications if n is not None]
    if not ids:
        return 0

    sent = 0
    dispatch = _dispatcher()
    try:
        rows = (
            db.session.query(Notification, User.email)
            .join(User, User.id == Notification.user_id)
            .filter(Notification.id.in_(ids))
            .all()
        )
    except SQLAlchemyError:
        current_app.logger.exception("Failed to load notifications for delivery")
        return 0

    for notification, email in rows:
        subject = (notification.payload or {}).get("email_subject")
        if not subject or not email:
            continue
        message = EmailMessage(
            to=email,
            subject=subject,
            body=notification.message,
            template=notification.notification_type,
            context=notification.payload or {},
        )
        try:
            dispatch(message)
            sent += 1
        except Exception:
            current_app.logger.exception(
                "Notification dispatch failed (notification_id=%s type=%s)",
                notification.id,
                notification.notification_type,
            )
    return sent


def list_notifications(user_id: int, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    q = db.session.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.id.desc()).limit(limit).all()


# =============================================================================
# ORDER EVENT HELPERS
# =============================================================================

def order_placed(order, vendor_ids) -> list:
    """Buyer confirmation plus one notification per vendor in the vendor split."""
    created = [
        notify(
            order.user_id,
            TYPE_ORDER_CREATED,
            f"Your order {order.order_number} has been placed.",
            payload={"order_id": order.id, "order_number": order.order_number, "total": str(order.total_amount)},
            dedupe_key=f"order:{order.id}:created",
            email_subject=f"Order confirmation {order.order_number}",
        )
    ]
    if vendor_ids:
        vendors = db.session.query(Vendor).filter(Vendor.id.in_(list(vendor_ids))).all()
        for vendor in vendors:
            created.append(
                notify(
                    vendor.user_id,
                    TYPE_VENDOR_NEW_ORDER,
                    f"New order {order.order_number} contains your products.",
                    payload={"order_id": order.id, "order_number": order.order_number, "vendor_id": vendor.id},
                    dedupe_key=f"order:{order.id}:vendor:{vendor.id}",
                    email_subject=f"New order {order.order_number}",
                )
            )
    return created


def payment_received(order, reference: str) -> Notification | None:
    return notify(
        order.user_id,
        TYPE_PAYMENT_RECEIVED,
        f"Payment for order {order.order_number} was received.",
        payload={"order_id": order.id, "reference": reference, "amount": str(order.total_amount)},
        dedupe_key=f"order:{order.id}:paid",
        email_subject=f"Payment received for {order.order_number}",
    )


def payment_failed(order, reference: str) -> Notification | None:
    return notify(
        order.user_id,
        TYPE_PAYMENT_FAILED,
        f"Payment for order {order.order_number} failed.",
        payload={"order_id": order.id, "reference": reference},
        dedupe_key=f"payment:{reference}:failed",
        email_subject=f"Payment failed for {order.order_number}",
    )


def order_status_changed(order, status: str, *, metadata: dict | None = None) -> Notification | None:
    types = {
        "processing": TYPE_ORDER_PROCESSING,
        "shipped": TYPE_ORDER_SHIPPED,
        "delivered": TYPE_ORDER_DELIVERED,
    }
    payload = {"order_id": order.id, "order_number": order.order_number, "status": status}
    payload.update(metadata or {})
    return notify(
        order.user_id,
        types.get(status, TYPE_ITEM_STATUS),
        f"Your order {order.order_number} is now {status}.",
        payload=payload,
        dedupe_key=f"order:{order.id}:status:{status}",
        email_subject=f"Order {order.order_number} {status}",
    )


def order_cancelled(order, reason: str | None) -> Notification | None:
    return notify(
        order.user_id,
        TYPE_ORDER_CANCELLED,
        f"Your order {order.order_number} was cancelled." + (f" Reason: {reason}" if reason else ""),
        payload={"order_id": order.id, "order_number": order.order_number, "reason": reason},
        dedupe_key=f"order:{order.id}:cancelled",
        email_subject=f"Order {order.order_number} cancelled",
    )


def refund_initiated(order, reference: str, amount=None) -> Notification | None:
    amount = order.total_amount if amount is None else amount
    return notify(
        order.user_id,
        TYPE_REFUND_INITIATED,
        f"A refund of {amount} for order {order.order_number} has been initiated.",
        payload={"order_id": order.id, "reference": reference, "amount": str(amount)},
        dedupe_key=f"refund:{reference}",
    )


def item_status_changed(order, item, status: str) -> Notification | None:
    return notify(
        order.user_id,
        TYPE_ITEM_STATUS,
        f"An item in order {order.order_number} is now {status}.",
        payload={"order_id": order.id, "order_item_id": item.id, "status": status, "notes": item.status_notes},
        dedupe_key=f"order_item:{item.id}:status:{status}",
    )

# Overview: Service-layer operations for payment; gateway initialisation, verification and webhooks.

"""
Payment Bridge

DESIGN PRINCIPLES:
- Gateway calls never run inside a database transaction. The pending
  PaymentTransaction is committed first, the gateway is called, then the
  row is updated with the outcome.
- PaymentTransaction rows are updated in place (pending -> success/failed),
  never replaced.
- Verification is idempotent: a reference already resolved as success
  short-circuits without calling the gateway or notifying again.
- A failed or unreachable verification marks the PaymentTransaction failed
  and leaves the order untouched, so re-verification or a fresh attempt
  can still succeed. Only an explicit charge.failed webhook marks the
  order's payment as failed.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..errors import OrderNotFound, PaymentError, PaymentNotFound, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, PaymentTransaction, User
from ..models.orders import ORDER_CANCELLED, ORDER_PENDING, PAYMENT_FAILED, PAYMENT_PAID, PAYMENT_PENDING
from ..models.payments import TXN_FAILED, TXN_PENDING, TXN_SUCCESS, TXN_TYPE_PAYMENT
from app.time_utils import utcnow
from . import communications_service
from .concurrency import lock_for_update, run_with_retry, transaction_scope
from .identifier_service import generate_payment_reference
from .lifecycle_service import apply_payment_success_locked
from .order_service import PAYMENT_METHOD_CASH_ON_DELIVERY
from .payment_gateway import GatewayVerification, get_gateway
from .pricing_service import to_minor_units
from .session_service import Actor


EVENT_CHARGE_SUCCESS = "charge.success"
EVENT_CHARGE_FAILED = "charge.failed"


@dataclass(frozen=True)
class PaymentInit:
    order_id: int
    reference: str
    authorization_url: str | None
    access_code: str | None
    amount: str
    amount_minor: int
    currency: str

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "reference": self.reference,
            "authorization_url": self.authorization_url,
            "access_code": self.access_code,
            "amount": self.amount,
            "amount_minor": self.amount_minor,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class VerificationResult:
    order_id: int
    reference: str
    verified: bool
    gateway_status: str
    transaction_status: str
    payment_status: str
    order_status: str
    already_verified: bool = False

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "reference": self.reference,
            "verified": self.verified,
            "gateway_status": self.gateway_status,
            "transaction_status": self.transaction_status,
            "payment_status": self.payment_status,
            "order_status": self.order_status,
            "already_verified": self.already_verified,
        }


@dataclass(frozen=True)
class WebhookResult:
    event: str | None
    reference: str | None
    handled: bool
    message: str

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "reference": self.reference,
            "handled": self.handled,
            "message": self.message,
        }


# =============================================================================
# INITIALISATION
# =============================================================================

def _callback_url(order_id: int) -> str:
    base = current_app.config.get("FRONTEND_URL", "").rstrip("/")
    return f"{base}/orders/{order_id}/verify"


def _start_attempt(order_id: int) -> tuple[int, str, dict]:
    """Commit a pending PaymentTransaction and point the order at its reference."""
    def _op():
        with transaction_scope(write_lock=True):
            order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
            if order.order_status != ORDER_PENDING or order.payment_status != PAYMENT_PENDING:
                raise ValidationError(
                    "Payment can only be started for a pending, unpaid order",
                    details={"order_status": order.order_status, "payment_status": order.payment_status},
                )
            if order.payment_method == PAYMENT_METHOD_CASH_ON_DELIVERY:
                raise ValidationError(
                    "Cash on delivery orders are paid when delivered",
                    details={"payment_method": order.payment_method},
                )

            email = db.session.query(User.email).filter(User.id == order.user_id).scalar()
            reference = generate_payment_reference(order.id)
            txn = PaymentTransaction(
                user_id=order.user_id,
                order_id=order.id,
                transaction_type=TXN_TYPE_PAYMENT,
                amount=order.total_amount,
                currency=current_app.config.get("PAYMENT_CURRENCY", "NGN"),
                status=TXN_PENDING,
                reference=reference,
                payment_gateway=order.payment_method,
                description=f"Payment for order {order.order_number}",
            )
            db.session.add(txn)
            order.payment_reference = reference
            db.session.flush()

            items = [
                {"product_id": pid, "quantity": qty}
                for pid, qty in db.session.query(OrderItem.product_id, OrderItem.quantity)
                .filter(OrderItem.order_id == order.id)
                .order_by(OrderItem.id)
            ]
            context = {
                "email": email,
                "amount": order.total_amount,
                "metadata": {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "user_id": order.user_id,
                    "items": items,
                },
            }
            txn_id = txn.id
        return txn_id, reference, context

    return run_with_retry(_op)


def _record_gateway_response(txn_id: int, *, raw: dict, failed: bool = False) -> None:
    with transaction_scope():
        txn = db.session.query(PaymentTransaction).filter_by(id=txn_id).first()
        txn.gateway_response = raw
        if failed and txn.status == TXN_PENDING:
            txn.status = TXN_FAILED
            txn.resolved_at = utcnow()


def initialize_order_payment(order_id: int) -> PaymentInit:
    """
    Start a payment attempt with the gateway.

    Raises PaymentError when the gateway rejects the request or cannot be
    reached; the attempt's PaymentTransaction is then marked failed.
    """
    txn_id, reference, context = _start_attempt(order_id)
    amount_minor = to_minor_units(context["amount"])

    try:
        init = get_gateway().initialize(
            email=context["email"],
            amount_minor=amount_minor,
            reference=reference,
            callback_url=_callback_url(order_id),
            metadata=context["metadata"],
        )
    except PaymentError as exc:
        _record_gateway_response(txn_id, raw={"error": exc.message, **exc.details}, failed=True)
        current_app.logger.warning("Payment initialization failed for order %s: %s", order_id, exc.message)
        raise

    _record_gateway_response(txn_id, raw=init.raw)
    return PaymentInit(
        order_id=order_id,
        reference=reference,
        authorization_url=init.authorization_url,
        access_code=init.access_code,
        amount=str(context["amount"]),
        amount_minor=amount_minor,
        currency=current_app.config.get("PAYMENT_CURRENCY", "NGN"),
    )


def retry_payment(order_id: int, actor: Actor) -> PaymentInit:
    """Fresh attempt (new reference, new pending row) for the buyer's unpaid order."""
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None or (order.user_id != actor.user_id and not actor.is_admin):
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return initialize_order_payment(order_id)


# =============================================================================
# VERIFICATION
# =============================================================================

def _load_payment_txn(reference: str) -> PaymentTransaction:
    txn = (
        db.session.query(PaymentTransaction)
        .filter_by(reference=reference, transaction_type=TXN_TYPE_PAYMENT)
        .first()
    )
    if txn is None:
        raise PaymentNotFound(f"Payment {reference} not found", details={"reference": reference})
    return txn


def _result(order: Order, txn: PaymentTransaction, *, gateway_status: str, already: bool) -> VerificationResult:
    return VerificationResult(
        order_id=order.id,
        reference=txn.reference,
        verified=txn.status == TXN_SUCCESS,
        gateway_status=gateway_status,
        transaction_status=txn.status,
        payment_status=order.payment_status,
        order_status=order.order_status,
        already_verified=already,
    )


def _apply_verification(reference: str, verification: GatewayVerification) -> VerificationResult:
    """
    Resolve a pending attempt from a gateway answer under the order lock.

    A success whose amount does not match the order total is treated as a
    failed verification.
    """
    def _op():
        with transaction_scope(write_lock=True):
            txn = lock_for_update(
                db.session.query(PaymentTransaction).filter_by(reference=reference, transaction_type=TXN_TYPE_PAYMENT)
            ).first()
            if txn is None:
                raise PaymentNotFound(f"Payment {reference} not found", details={"reference": reference})
            order = lock_for_update(db.session.query(Order).filter_by(id=txn.order_id)).first()

            if txn.status == TXN_SUCCESS:
                result = _result(order, txn, gateway_status="success", already=True)
                return result, []

            txn.gateway_response = verification.raw
            if verification.external_id:
                txn.external_transaction_id = verification.external_id

            success = verification.success
            if success and verification.amount_minor is not None:
                expected = to_minor_units(txn.amount)
                if int(verification.amount_minor) != expected:
                    current_app.logger.warning(
                        "Payment %s amount mismatch: expected %s, gateway reported %s",
                        reference,
                        expected,
                        verification.amount_minor,
                    )
                    success = False

            notifications = []
            if success:
                notifications = apply_payment_success_locked(order, txn)
            else:
                txn.status = TXN_FAILED
                txn.resolved_at = utcnow()
            db.session.flush()
            result = _result(order, txn, gateway_status=verification.status, already=False)
        return result, notifications

    result, notifications = run_with_retry(_op)
    communications_service.deliver(notifications)
    return result


def _mark_unreachable(reference: str, error: PaymentError) -> None:
    with transaction_scope():
        txn = db.session.query(PaymentTransaction).filter_by(reference=reference).first()
        if txn is not None and txn.status == TXN_PENDING:
            txn.status = TXN_FAILED
            txn.resolved_at = utcnow()
            txn.gateway_response = {"error": error.message, **error.details}


def verify_payment(reference: str, actor: Actor | None = None) -> VerificationResult:
    """
    Check a payment with the gateway and apply the outcome.

    Calling it again for an already-successful reference returns the
    cached state without contacting the gateway.
    """
    txn = _load_payment_txn(reference)
    if actor is not None and not actor.is_admin and txn.user_id != actor.user_id:
        raise PaymentNotFound(f"Payment {reference} not found", details={"reference": reference})

    if txn.status == TXN_SUCCESS:
        order = db.session.query(Order).filter_by(id=txn.order_id).first()
        return _result(order, txn, gateway_status="success", already=True)

    try:
        verification = get_gateway().verify(reference)
    except PaymentError as exc:
        _mark_unreachable(reference, exc)
        current_app.logger.warning("Payment verification failed for %s: %s", reference, exc.message)
        raise

    result = _apply_verification(reference, verification)
    current_app.logger.info(
        "Payment %s verified: gateway_status=%s order_status=%s",
        reference,
        result.gateway_status,
        result.order_status,
    )
    return result


# =============================================================================
# WEBHOOKS
# =============================================================================

def _handle_charge_failed(reference: str, data: dict) -> WebhookResult:
    def _op():
        with transaction_scope(write_lock=True):
            txn = lock_for_update(
                db.session.query(PaymentTransaction).filter_by(reference=reference, transaction_type=TXN_TYPE_PAYMENT)
            ).first()
            order = lock_for_update(db.session.query(Order).filter_by(id=txn.order_id)).first()
            notifications = []
            if txn.status == TXN_SUCCESS or order.payment_status == PAYMENT_PAID:
                return "Payment already succeeded; failure ignored", notifications
            if txn.status != TXN_FAILED:
                txn.status = TXN_FAILED
                txn.resolved_at = utcnow()
                txn.gateway_response = {"event": EVENT_CHARGE_FAILED, "data": data}
            if order.order_status != ORDER_CANCELLED and order.payment_status != PAYMENT_FAILED:
                order.payment_status = PAYMENT_FAILED
                notifications.append(communications_service.payment_failed(order, reference))
            db.session.flush()
        return "Payment marked as failed", notifications

    message, notifications = run_with_retry(_op)
    communications_service.deliver(notifications)
    return WebhookResult(EVENT_CHARGE_FAILED, reference, True, message)


def handle_webhook(payload) -> WebhookResult:
    """
    Apply a signature-checked gateway event.

    Unknown events, malformed payloads and unknown references are
    acknowledged without any state change.
    """
    if not isinstance(payload, dict):
        current_app.logger.info("Ignoring malformed payment webhook payload")
        return WebhookResult(None, None, False, "Malformed payload ignored")

    event = payload.get("event")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    reference = data.get("reference")

    if event not in (EVENT_CHARGE_SUCCESS, EVENT_CHARGE_FAILED):
        current_app.logger.info("Ignoring payment webhook event %s", event)
        return WebhookResult(event, reference, False, "Event not handled")

    if not reference:
        current_app.logger.info("Ignoring payment webhook %s without a reference", event)
        return WebhookResult(event, None, False, "Missing reference")

    exists = (
        db.session.query(PaymentTransaction.id)
        .filter_by(reference=reference, transaction_type=TXN_TYPE_PAYMENT)
        .first()
    )
    if exists is None:
        current_app.logger.info("Ignoring payment webhook %s for unknown reference %s", event, reference)
        return WebhookResult(event, reference, False, "Unknown reference")

    if event == EVENT_CHARGE_FAILED:
        return _handle_charge_failed(reference, data)

    amount = data.get("amount")
    if amount is not None:
        if isinstance(amount, bool) or not isinstance(amount, (int, str)) or not str(amount).isdigit():
            current_app.logger.info("Ignoring payment webhook %s with malformed amount %r", event, amount)
            return WebhookResult(event, reference, False, "Malformed payload ignored")
        amount = int(amount)

    external_id = data.get("id")
    verification = GatewayVerification(
        success=data.get("status", "success") == "success",
        status=str(data.get("status", "success")),
        reference=reference,
        amount_minor=amount,
        external_id=str(external_id) if external_id is not None else None,
        raw={"event": event, "data": data},
    )
    result = _apply_verification(reference, verification)
    message = "Payment already processed" if result.already_verified else "Payment processed"
    return WebhookResult(event, reference, True, message)

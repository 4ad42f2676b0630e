from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


TXN_TYPE_PAYMENT = "payment"
TXN_TYPE_REFUND = "refund"

TXN_PENDING = "pending"
TXN_SUCCESS = "success"
TXN_FAILED = "failed"


class PaymentTransaction(db.Model):
    """
    One row per payment attempt or refund.

    Rows are updated in place as verification resolves (pending -> success
    or failed), never replaced. reference is the gateway reference.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.UniqueConstraint("reference", name="uq_payment_transactions_reference"),
        db.Index("ix_payment_txns_order_type", "order_id", "transaction_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, default=TXN_TYPE_PAYMENT)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="NGN")
    status = db.Column(db.String(16), nullable=False, default=TXN_PENDING, index=True)

    reference = db.Column(db.String(128), nullable=False)
    external_transaction_id = db.Column(db.String(128), nullable=True)
    payment_gateway = db.Column(db.String(32), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    # Gateway payloads (initialisation, verification, errors)
    gateway_response = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "transaction_type": self.transaction_type,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "reference": self.reference,
            "external_transaction_id": self.external_transaction_id,
            "payment_gateway": self.payment_gateway,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
        }

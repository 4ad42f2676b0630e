from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


class Notification(db.Model):
    """
    In-app notification for a user.

    dedupe_key makes a notification idempotent: at most one row per key,
    so re-running a verification cannot notify twice.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.UniqueConstraint("dedupe_key", name="uq_notifications_dedupe_key"),
        db.Index("ix_notifications_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    notification_type = db.Column(db.String(64), nullable=False, index=True)
    message = db.Column(db.String(500), nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    dedupe_key = db.Column(db.String(128), nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.notification_type,
            "message": self.message,
            "payload": self.payload,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }

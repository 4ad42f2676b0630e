"""
Notification tests.

Verifies:
- e-mail hand-off reaches the registered dispatcher after commit
- notifications without an e-mail subject stay in-app only
- a repeated dedupe key writes nothing
"""

from app.extensions import db
from app.models import Notification
from app.services.communications_service import deliver, list_notifications, notify
from app.services.concurrency import transaction_scope


class TestDeliver:

    def test_empty_outbox_still_receives_mail(self, buyer, outbox):
        assert len(outbox) == 0

        with transaction_scope():
            note = notify(buyer.id, "order_created", "Hi", email_subject="Hello")

        assert deliver([note]) == 1
        assert [m.to for m in outbox] == ["buyer@example.com"]
        assert outbox[0].subject == "Hello"
        assert outbox[0].template == "order_created"

    def test_notification_without_subject_is_not_mailed(self, buyer, outbox):
        with transaction_scope():
            note = notify(buyer.id, "order_item_status", "An item moved")

        assert deliver([note]) == 0
        assert len(outbox) == 0
        assert [n.id for n in list_notifications(buyer.id)] == [note.id]

    def test_ids_and_deduped_entries(self, buyer, outbox):
        with transaction_scope():
            note = notify(buyer.id, "order_created", "Hi", email_subject="Hello")

        assert deliver([note.id, None]) == 1
        assert deliver([]) == 0


class TestNotify:

    def test_repeated_dedupe_key_is_a_no_op(self, buyer):
        with transaction_scope():
            first = notify(buyer.id, "order_created", "Hi", dedupe_key="order:1:created")
            second = notify(buyer.id, "order_created", "Hi again", dedupe_key="order:1:created")

        assert first is not None
        assert second is None
        assert db.session.query(Notification).filter_by(user_id=buyer.id).count() == 1

    def test_unread_filter(self, buyer):
        with transaction_scope():
            read = notify(buyer.id, "order_created", "Old")
            read.is_read = True
            unread = notify(buyer.id, "order_shipped", "New")

        assert [n.id for n in list_notifications(buyer.id, unread_only=True)] == [unread.id]
        assert [n.id for n in list_notifications(buyer.id)] == [unread.id, read.id]

"""
Unit tests for worker processes.
Tests the delivery tracking backfill worker.
"""
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from db.models import Message
from workers import delivery_backfill


def legacy_message(index: int, delivered=None) -> Message:
    return Message(
        sender_id="a",
        receiver_id="b",
        conversation_id="c",
        type="text",
        content=f"legacy {index}",
        timestamp=datetime(2023, 1, 1) + timedelta(minutes=index),
        delivered=delivered
    )


class TestDeliveryBackfill:
    """Tests for the delivery backfill worker."""

    def test_backfill_sets_delivered_at_timestamp(self, test_db: Session):
        messages = [legacy_message(i) for i in range(5)]
        test_db.add_all(messages)
        test_db.commit()

        updated = delivery_backfill.run_once(batch_size=2)

        assert updated == 5
        test_db.expire_all()
        for message in test_db.query(Message).all():
            assert message.delivered is True
            assert message.delivered_at == message.timestamp

    def test_tracked_messages_untouched(self, test_db: Session):
        tracked = legacy_message(0, delivered=False)
        test_db.add(tracked)
        test_db.commit()

        assert delivery_backfill.run_once() == 0
        test_db.expire_all()
        assert test_db.get(Message, tracked.id).delivered is False

    def test_second_pass_is_noop(self, test_db: Session):
        test_db.add(legacy_message(0))
        test_db.commit()

        assert delivery_backfill.run_once() == 1
        assert delivery_backfill.run_once() == 0

    def test_backfill_batch(self, test_db: Session):
        test_db.add_all([legacy_message(i) for i in range(3)])
        test_db.commit()

        assert delivery_backfill.backfill_batch(test_db, 2) == 2
        assert delivery_backfill.backfill_batch(test_db, 2) == 1
        assert delivery_backfill.backfill_batch(test_db, 2) == 0

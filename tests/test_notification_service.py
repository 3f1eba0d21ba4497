import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from app.services.conversation_service import find_or_create_open_conversation, transition_conversation
from app.services.notification_service import (
    Notification,
    NotificationBus,
    QueueMonitor,
    timeout_priority,
)
from app.services.patient_service import LeadFormData, create_lead
from app.services.state_machine import ConversationState


def _notification(**overrides):
    data = {"type": "conversation_update", "title": "t", "message": "m"}
    data.update(overrides)
    return Notification(**data)


class TestTimeoutPriority:
    @pytest.mark.parametrize(
        "minutes,expected",
        [(5, "low"), (15, "medium"), (29, "medium"), (30, "high"), (59, "high"), (60, "urgent"), (240, "urgent")],
    )
    def test_thresholds(self, minutes, expected):
        assert timeout_priority(minutes) == expected


class TestNotificationBus:
    def test_publish_reaches_subscribers(self):
        bus = NotificationBus()
        received = []
        bus.subscribe("a", received.append)

        delivered = bus.publish(_notification())

        assert delivered == 1
        assert len(received) == 1

    def test_unsubscribe(self):
        bus = NotificationBus()
        callback = Mock()
        bus.subscribe("a", callback)
        bus.unsubscribe("a")

        bus.publish(_notification())

        callback.assert_not_called()
        assert bus.subscriber_count == 0

    def test_failing_subscriber_is_isolated(self):
        bus = NotificationBus()
        good = Mock()
        bus.subscribe("bad", Mock(side_effect=RuntimeError("boom")))
        bus.subscribe("good", good)

        delivered = bus.publish(_notification())

        assert delivered == 1
        good.assert_called_once()

    def test_recent_newest_first(self):
        bus = NotificationBus()
        bus.publish(_notification(title="first"))
        bus.publish(_notification(title="second"))

        assert [n.title for n in bus.recent(10)] == ["second", "first"]
        assert len(bus.recent(1)) == 1

    def test_close_drops_subscribers(self):
        bus = NotificationBus()
        callback = Mock()
        bus.subscribe("a", callback)
        bus.close()

        assert bus.publish(_notification()) == 0
        callback.assert_not_called()

    def test_to_dict(self):
        data = _notification(conversation_id="c-1").to_dict()
        assert data["conversation_id"] == "c-1"
        assert isinstance(data["timestamp"], str)


class TestQueueMonitor:
    def _queued_conversation(self, db, association, phone, name):
        patient = create_lead(db, association, phone, LeadFormData(name=name))
        conversation, _ = find_or_create_open_conversation(db, patient.id)
        transition_conversation(db, conversation.id, ConversationState.FILA_HUMANO, "sistema")
        return conversation

    def test_check_now_publishes_overdue_only(self, db, association, session_factory):
        old = self._queued_conversation(db, association, "11911111111", "Antiga")
        recent = self._queued_conversation(db, association, "11922222222", "Recente")
        old.queued_at = datetime.now(timezone.utc) - timedelta(minutes=45)
        db.commit()

        bus = NotificationBus()
        monitor = QueueMonitor(bus, session_factory, interval_seconds=60, timeout_minutes=15)

        published = monitor.check_now()

        assert [n.conversation_id for n in published] == [str(old.id)]
        assert published[0].type == "queue_timeout"
        assert published[0].priority == "high"
        assert published[0].patient_name == "Antiga"
        assert str(recent.id) not in [n.conversation_id for n in bus.recent()]

    def test_start_and_stop(self, session_factory):
        bus = NotificationBus()
        monitor = QueueMonitor(bus, session_factory, interval_seconds=3600, timeout_minutes=15)

        async def scenario():
            assert monitor.start() is True
            assert monitor.start() is False
            assert monitor.is_running is True
            await asyncio.sleep(0)
            assert await monitor.stop() is True
            assert monitor.is_running is False
            assert await monitor.stop() is False

        asyncio.run(scenario())

    def test_overdue_conversation_is_announced_once_per_tier(self, db, association, session_factory):
        conversation = self._queued_conversation(db, association, "11911111111", "Antiga")
        queued_at = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        conversation.queued_at = queued_at
        db.commit()

        bus = NotificationBus()
        monitor = QueueMonitor(bus, session_factory, interval_seconds=60, timeout_minutes=15)

        first = monitor.check_now(now=queued_at + timedelta(minutes=20))
        repeated = monitor.check_now(now=queued_at + timedelta(minutes=25))
        escalated = monitor.check_now(now=queued_at + timedelta(minutes=35))

        assert [n.priority for n in first] == ["medium"]
        assert repeated == []
        assert [n.priority for n in escalated] == ["high"]
        assert len(bus.recent()) == 2

    def test_taken_conversation_is_announced_again_when_requeued(self, db, association, session_factory):
        conversation = self._queued_conversation(db, association, "11911111111", "Antiga")
        queued_at = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        conversation.queued_at = queued_at
        db.commit()
        monitor = QueueMonitor(NotificationBus(), session_factory, interval_seconds=60, timeout_minutes=15)
        later = queued_at + timedelta(minutes=20)
        assert len(monitor.check_now(now=later)) == 1

        transition_conversation(db, conversation.id, ConversationState.COM_HUMANO, "att-1")
        db.commit()
        assert monitor.check_now(now=later) == []

        transition_conversation(db, conversation.id, ConversationState.COM_IA, "att-1")
        transition_conversation(db, conversation.id, ConversationState.FILA_HUMANO, "sistema")
        conversation.queued_at = queued_at
        db.commit()

        assert len(monitor.check_now(now=later)) == 1

    def test_polling_runs_off_the_event_loop(self, session_factory):
        monitor = QueueMonitor(NotificationBus(), session_factory, interval_seconds=3600, timeout_minutes=15)

        async def scenario():
            with patch("app.services.notification_service.asyncio.to_thread", new=AsyncMock()) as to_thread:
                monitor.start()
                await asyncio.sleep(0)
                await monitor.stop()
            return to_thread

        to_thread = asyncio.run(scenario())

        to_thread.assert_awaited_once_with(monitor.check_now)

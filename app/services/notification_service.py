"""Attendant notifications: an in-process pub/sub bus and the queue timeout monitor."""

import asyncio
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.orm import Session, joinedload

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import Conversation
from app.services.state_machine import ConversationState

logger = get_logger("notification_service")

NOTIFICATION_TYPES = ("new_conversation", "queue_timeout", "conversation_update")
RECENT_LIMIT = 100


@dataclass
class Notification:
    type: str
    title: str
    message: str
    conversation_id: Optional[str] = None
    patient_name: Optional[str] = None
    priority: str = "medium"  # low, medium, high, urgent
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def timeout_priority(minutes: float) -> str:
    if minutes >= 60:
        return "urgent"
    if minutes >= 30:
        return "high"
    if minutes >= 15:
        return "medium"
    return "low"


class NotificationBus:
    """Subscribers receive every published notification.

    Publishing is best-effort: a failing subscriber is logged and skipped, the
    publisher never sees the error.
    """

    def __init__(self, history: int = RECENT_LIMIT):
        self._subscribers: dict[str, Callable[[Notification], None]] = {}
        self._recent: deque[Notification] = deque(maxlen=history)
        self._lock = threading.Lock()
        self.closed = False

    def subscribe(self, subscriber_id: str, callback: Callable[[Notification], None]) -> None:
        with self._lock:
            self._subscribers[subscriber_id] = callback

    def unsubscribe(self, subscriber_id: str) -> None:
        with self._lock:
            self._subscribers.pop(subscriber_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, notification: Notification) -> int:
        """Deliver to all subscribers. Returns how many accepted it."""
        if self.closed:
            logger.warning("Publish on closed notification bus", extra={"context": {"type": notification.type}})
            return 0

        with self._lock:
            self._recent.append(notification)
            subscribers = list(self._subscribers.items())

        delivered = 0
        for subscriber_id, callback in subscribers:
            try:
                callback(notification)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "Notification subscriber failed",
                    extra={"context": {"subscriber": subscriber_id, "type": notification.type, "error": str(e)}},
                )
        return delivered

    def recent(self, limit: int = 20) -> list[Notification]:
        with self._lock:
            items = list(self._recent)
        return list(reversed(items))[:limit]

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self.closed = True


def new_conversation_notification(conversation: Conversation, patient_name: Optional[str]) -> Notification:
    name = patient_name or "Paciente"
    return Notification(
        type="new_conversation",
        title="Nova conversa na fila",
        message=f"{name} aguarda atendimento humano",
        conversation_id=str(conversation.id),
        patient_name=patient_name,
        priority="high",
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class QueueMonitor:
    """Polls the human queue and warns about conversations waiting too long."""

    def __init__(
        self,
        bus: NotificationBus,
        session_factory: Callable[[], Session],
        interval_seconds: float = 300.0,
        timeout_minutes: int = 15,
    ):
        self.bus = bus
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.timeout_minutes = timeout_minutes
        self._task: Optional[asyncio.Task] = None
        # conversation id -> last priority published for it
        self._alerted: dict[str, str] = {}
        self._check_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start polling on the running loop. False if already running."""
        if self.is_running:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "Queue monitor started",
            extra={"context": {"interval_seconds": self.interval_seconds, "timeout_minutes": self.timeout_minutes}},
        )
        return True

    async def stop(self) -> bool:
        if not self.is_running:
            self._task = None
            return False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Queue monitor stopped")
        return True

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.check_now)
            except Exception as e:
                logger.error("Queue check failed", exc_info=True, extra={"context": {"error": str(e)}})
            await asyncio.sleep(self.interval_seconds)

    def check_now(self, now: Optional[datetime] = None) -> list[Notification]:
        """Publish queue_timeout for conversations queued past the threshold.

        A conversation is announced once per priority tier: again only when its
        wait escalates it (medium -> high -> urgent), or after it leaves the queue
        and comes back.
        """
        now = now or datetime.now(timezone.utc)
        threshold = now - timedelta(minutes=self.timeout_minutes)

        with self._check_lock:
            return self._check(now, threshold)

    def _check(self, now: datetime, threshold: datetime) -> list[Notification]:
        db = self.session_factory()
        try:
            queued = (
                db.query(Conversation)
                .options(joinedload(Conversation.patient))
                .filter(
                    Conversation.status == ConversationState.FILA_HUMANO.value,
                    Conversation.queued_at.isnot(None),
                )
                .order_by(Conversation.queued_at)
                .all()
            )

            published = []
            overdue: dict[str, str] = {}
            for conversation in queued:
                queued_at = _as_utc(conversation.queued_at)
                if queued_at > threshold:
                    continue
                waiting = (now - queued_at).total_seconds() / 60
                conversation_id = str(conversation.id)
                priority = timeout_priority(waiting)
                overdue[conversation_id] = priority
                if self._alerted.get(conversation_id) == priority:
                    continue

                patient_name = conversation.patient.name if conversation.patient else None
                notification = Notification(
                    type="queue_timeout",
                    title="Conversa aguardando na fila",
                    message=f"{patient_name or 'Paciente'} aguarda há {int(waiting)} minutos",
                    conversation_id=conversation_id,
                    patient_name=patient_name,
                    priority=priority,
                )
                self.bus.publish(notification)
                published.append(notification)
        finally:
            db.close()

        self._alerted = overdue

        if published:
            logger.info("Queue timeouts published", extra={"context": {"count": len(published)}})
        return published


def build_queue_monitor(bus: NotificationBus) -> QueueMonitor:
    return QueueMonitor(
        bus,
        SessionLocal,
        interval_seconds=settings.queue_monitor_interval_seconds,
        timeout_minutes=settings.queue_timeout_minutes,
    )


# Both live on app.state for the lifetime of the process, see app.main.
def get_notification_bus(request: Request) -> NotificationBus:
    return request.app.state.notification_bus


def get_queue_monitor(request: Request) -> QueueMonitor:
    return request.app.state.queue_monitor

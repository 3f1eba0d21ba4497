from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Conversation, Message, Patient
from app.services.notification_service import NotificationBus, new_conversation_notification
from app.services.state_machine import OPEN_STATES, ConversationState, InvalidTransitionError, transition

logger = get_logger("conversation_service")

OPEN_STATUS_VALUES = [state.value for state in OPEN_STATES]

SENDER_PATIENT = "paciente"
SENDER_AI = "ia"
SENDER_ATTENDANT = "atendente"
SENDER_SYSTEM = "sistema"
SENDER_TYPES = (SENDER_PATIENT, SENDER_AI, SENDER_ATTENDANT, SENDER_SYSTEM)


class ConversationNotFoundError(Exception):
    def __init__(self, conversation_id):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class DuplicateConversationError(Exception):
    """More than one open conversation for a patient. Never resolved automatically."""

    def __init__(self, patient_id, conversation_ids: list[str]):
        self.patient_id = patient_id
        self.conversation_ids = conversation_ids
        super().__init__(f"Patient {patient_id} has {len(conversation_ids)} open conversations")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def find_open_conversation(db: Session, patient_id: UUID) -> Optional[Conversation]:
    conversations = (
        db.query(Conversation)
        .filter(Conversation.patient_id == patient_id, Conversation.status.in_(OPEN_STATUS_VALUES))
        .all()
    )
    if len(conversations) > 1:
        ids = [str(c.id) for c in conversations]
        logger.error(
            "Multiple open conversations for patient",
            extra={"context": {"patient_id": str(patient_id), "conversation_ids": ids}},
        )
        raise DuplicateConversationError(patient_id, ids)
    return conversations[0] if conversations else None


def find_or_create_open_conversation(db: Session, patient_id: UUID) -> tuple[Conversation, bool]:
    """Return (conversation, created). A resolved conversation is never reused."""
    conversation = find_open_conversation(db, patient_id)
    if conversation is not None:
        return conversation, False

    now = _now()
    conversation = Conversation(
        patient_id=patient_id,
        status=ConversationState.COM_IA.value,
        started_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(conversation)
            db.flush()
    except IntegrityError:
        # Lost the race against a concurrent first message from the same patient
        winner = find_open_conversation(db, patient_id)
        if winner is None:
            logger.error(
                "Open conversation insert rejected but no open row found",
                extra={"context": {"patient_id": str(patient_id)}},
            )
            raise DuplicateConversationError(patient_id, [])
        logger.warning(
            "Concurrent conversation insert, reusing open conversation",
            extra={"context": {"patient_id": str(patient_id), "conversation_id": str(winner.id)}},
        )
        return winner, False

    logger.info(
        "Conversation opened",
        extra={"context": {"patient_id": str(patient_id), "conversation_id": str(conversation.id)}},
    )
    return conversation, True


def get_conversation(db: Session, conversation_id: UUID, association_id: Optional[UUID] = None) -> Conversation:
    query = db.query(Conversation).filter(Conversation.id == conversation_id)
    if association_id is not None:
        query = query.join(Patient, Patient.id == Conversation.patient_id).filter(
            Patient.association_id == association_id
        )
    conversation = query.first()
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)
    return conversation


def _last_timestamp(db: Session, conversation_id: UUID) -> Optional[datetime]:
    return _as_utc(
        db.query(func.max(Message.timestamp)).filter(Message.conversation_id == conversation_id).scalar()
    )


def append_message(
    db: Session,
    conversation: Conversation,
    content: str,
    sender_type: str,
    sender_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Message:
    """Append to the conversation log. Timestamps strictly increase per conversation."""
    if sender_type not in SENDER_TYPES:
        raise ValueError(f"Unknown sender_type: {sender_type}")

    now = _now()
    last = _last_timestamp(db, conversation.id)
    if last is not None and now <= last:
        now = last + timedelta(microseconds=1)

    message = Message(
        conversation_id=conversation.id,
        content=content,
        sender_type=sender_type,
        sender_id=sender_id,
        timestamp=now,
        message_metadata=metadata or {},
    )
    db.add(message)
    conversation.updated_at = now
    db.flush()
    return message


def list_messages(db: Session, conversation_id: UUID) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.asc())
        .all()
    )


def transition_conversation(
    db: Session,
    conversation_id: UUID,
    to_state: ConversationState,
    actor_id: str,
    bus: Optional[NotificationBus] = None,
    reason: Optional[str] = None,
) -> tuple[ConversationState, Conversation]:
    """Validated, audited state change. Returns (previous_state, conversation).

    The row is locked for the rest of the transaction so two attendants cannot
    both take the same conversation.
    """
    conversation = (
        db.query(Conversation).filter(Conversation.id == conversation_id).with_for_update().first()
    )
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)

    from_state = ConversationState(conversation.status)
    try:
        transition(from_state, to_state)
    except InvalidTransitionError:
        logger.error(
            "Rejected conversation transition",
            extra={
                "context": {
                    "conversation_id": str(conversation_id),
                    "from": from_state.value,
                    "to": to_state.value,
                    "actor": actor_id,
                }
            },
        )
        raise

    now = _now()
    conversation.status = to_state.value
    conversation.updated_at = now
    if to_state == ConversationState.FILA_HUMANO:
        conversation.queued_at = now
        conversation.attendant_id = None
    elif to_state == ConversationState.COM_HUMANO:
        conversation.attendant_id = actor_id
    elif to_state == ConversationState.RESOLVIDA:
        conversation.ended_at = now
    elif to_state == ConversationState.COM_IA:
        conversation.attendant_id = None
        conversation.queued_at = None

    append_message(
        db,
        conversation,
        f"Status alterado: {from_state.value} -> {to_state.value}",
        SENDER_SYSTEM,
        sender_id=actor_id,
        metadata={"event": "transition", "from": from_state.value, "to": to_state.value, "reason": reason},
    )

    logger.info(
        "Conversation transitioned",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "from": from_state.value,
                "to": to_state.value,
                "actor": actor_id,
            }
        },
    )

    if bus is not None and to_state == ConversationState.FILA_HUMANO:
        try:
            patient_name = conversation.patient.name if conversation.patient else None
            bus.publish(new_conversation_notification(conversation, patient_name))
        except Exception as e:
            logger.warning(
                "Queue notification failed",
                extra={"context": {"conversation_id": str(conversation.id), "error": str(e)}},
            )

    return from_state, conversation


def get_queue(db: Session, association_id: UUID) -> list[Conversation]:
    """Conversations waiting for an attendant, oldest first."""
    return (
        db.query(Conversation)
        .join(Patient, Patient.id == Conversation.patient_id)
        .filter(
            Patient.association_id == association_id,
            Conversation.status == ConversationState.FILA_HUMANO.value,
        )
        .order_by(Conversation.queued_at.asc())
        .all()
    )


def get_attendant_conversations(db: Session, association_id: UUID, attendant_id: str) -> list[Conversation]:
    return (
        db.query(Conversation)
        .join(Patient, Patient.id == Conversation.patient_id)
        .filter(
            Patient.association_id == association_id,
            Conversation.status == ConversationState.COM_HUMANO.value,
            Conversation.attendant_id == attendant_id,
        )
        .order_by(Conversation.updated_at.desc())
        .all()
    )


def find_open_conversation_violations(db: Session) -> list[dict]:
    """Patients with more than one open conversation. Empty when the index holds."""
    rows = (
        db.query(Conversation.patient_id, func.count(Conversation.id))
        .filter(Conversation.status.in_(OPEN_STATUS_VALUES))
        .group_by(Conversation.patient_id)
        .having(func.count(Conversation.id) > 1)
        .all()
    )
    violations = [{"patient_id": str(patient_id), "open_conversations": count} for patient_id, count in rows]
    for violation in violations:
        logger.error("Open conversation invariant violated", extra={"context": violation})
    return violations


def serialize_conversation(conversation: Conversation) -> dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        value = _as_utc(value)
        return value.isoformat() if value else None

    return {
        "id": str(conversation.id),
        "patient_id": str(conversation.patient_id),
        "status": conversation.status,
        "attendant_id": conversation.attendant_id,
        "started_at": _iso(conversation.started_at),
        "updated_at": _iso(conversation.updated_at),
        "queued_at": _iso(conversation.queued_at),
        "ended_at": _iso(conversation.ended_at),
    }

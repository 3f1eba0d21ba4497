"""Inbound WhatsApp message handling: identify, record, reply, escalate."""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import LoggerAdapter, get_logger
from app.models import Association, Conversation, Message, Patient
from app.schemas.webhook import WahaEvent
from app.services.conversation_service import (
    SENDER_AI,
    SENDER_PATIENT,
    SENDER_SYSTEM,
    append_message,
    find_or_create_open_conversation,
    transition_conversation,
)
from app.services.directory_service import WordPressDirectoryClient
from app.services.escalation_service import EscalationPolicy
from app.services.message_service import ReplyGenerator, handoff_message
from app.services.notification_service import NotificationBus
from app.services.patient_service import (
    DirectoryUnavailableError,
    LeadFormData,
    SyncType,
    build_interlocutor_context,
    create_lead,
    reconcile,
)
from app.services.phone_service import InvalidPhoneError, normalize_phone, to_chat_id
from app.services.state_machine import ConversationState
from app.services.whatsapp_service import WahaClient

logger = get_logger("inbound_service")

MESSAGE_EVENTS = ("message",)
IGNORED_CHAT_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")
AI_SENDER_ID = "ia"
SYSTEM_ACTOR = "sistema"


@dataclass
class InboundOutcome:
    status: str  # processed, ignored
    reason: Optional[str] = None
    patient: Optional[Patient] = None
    conversation: Optional[Conversation] = None
    sync_type: Optional[SyncType] = None
    escalated: bool = False
    messages: list[Message] = field(default_factory=list)

    @property
    def conversation_status(self) -> Optional[str]:
        return self.conversation.status if self.conversation else None


def ignore_reason(event: WahaEvent) -> Optional[str]:
    """Why an event is dropped before tenant resolution, or None to process it."""
    if event.event not in MESSAGE_EVENTS:
        return "not_a_message"
    payload = event.payload
    if payload is None or not payload.from_:
        return "no_sender"
    if payload.fromMe:
        return "from_me"
    if payload.from_.endswith(IGNORED_CHAT_SUFFIXES) or payload.from_ == "status@broadcast":
        return "group_or_broadcast"
    if not (payload.body or "").strip():
        return "empty_body"
    return None


async def _deliver(
    gateway: WahaClient,
    session: Optional[str],
    chat_id: str,
    message: Message,
    log: LoggerAdapter,
) -> bool:
    result = await gateway.send_text(session or "default", chat_id, message.content)
    message.message_metadata = {**(message.message_metadata or {}), **result.as_delivery_metadata()}
    if not result.ok:
        log.warning("Reply not delivered, kept in history", context={"message_id": str(message.id)})
    return result.ok


async def handle_inbound(
    db: Session,
    event: WahaEvent,
    association: Association,
    directory: WordPressDirectoryClient,
    gateway: WahaClient,
    policy: EscalationPolicy,
    replier: ReplyGenerator,
    bus: Optional[NotificationBus] = None,
) -> InboundOutcome:
    """Process one patient message. Delivery failures never undo what was recorded."""
    payload = event.payload
    text = (payload.body or "").strip()

    try:
        canonical = normalize_phone(payload.from_)
    except InvalidPhoneError as e:
        logger.info(
            "Ignoring message from invalid phone",
            extra={"context": {"association": association.subdomain, "reason": e.reason}},
        )
        return InboundOutcome(status="ignored", reason="invalid_phone")

    log = LoggerAdapter(logger, {"association": association.subdomain, "session": event.session})

    form_data = LeadFormData(name=payload.notifyName)
    try:
        reconciliation = await reconcile(db, association, canonical, form_data, directory=directory)
        patient = reconciliation.patient
        sync_type = reconciliation.sync_type
        interlocutor = reconciliation.interlocutor
    except DirectoryUnavailableError as e:
        # Messages are never dropped for a directory outage; the contact is kept as a lead.
        log.warning("Directory down for unknown contact, storing as lead", context={"error": str(e)})
        patient = create_lead(db, association, canonical, form_data)
        sync_type = SyncType.LEAD_CREATED
        interlocutor = build_interlocutor_context(patient)

    conversation, created = find_or_create_open_conversation(db, patient.id)
    log = LoggerAdapter(
        logger,
        {"association": association.subdomain, "session": event.session, "conversation_id": str(conversation.id)},
    )

    outcome = InboundOutcome(status="processed", patient=patient, conversation=conversation, sync_type=sync_type)
    outcome.messages.append(
        append_message(
            db,
            conversation,
            text,
            SENDER_PATIENT,
            sender_id=canonical,
            metadata={"session": event.session, "gateway_message_id": payload.id, "type": payload.type},
        )
    )
    log.info(
        "Patient message recorded",
        context={"patient_id": str(patient.id), "sync_type": sync_type.value, "new_conversation": created},
    )

    if conversation.status != ConversationState.COM_IA.value:
        return outcome

    chat_id = payload.from_ if payload.from_.endswith("@c.us") else to_chat_id(canonical)

    reply_text = replier.generate(conversation, text, interlocutor)
    reply = append_message(db, conversation, reply_text, SENDER_AI, AI_SENDER_ID)
    outcome.messages.append(reply)
    await _deliver(gateway, event.session, chat_id, reply, log)

    if policy.should_escalate(text):
        transition_conversation(
            db, conversation.id, ConversationState.FILA_HUMANO, SYSTEM_ACTOR, bus=bus, reason="keyword"
        )
        notice = append_message(db, conversation, handoff_message(), SENDER_SYSTEM, SYSTEM_ACTOR)
        outcome.messages.append(notice)
        outcome.escalated = True
        await _deliver(gateway, event.session, chat_id, notice, log)
        log.info("Conversation escalated to human queue")

    db.flush()
    return outcome

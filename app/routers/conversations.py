from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.routers.associations import resolve_association_or_error
from app.schemas.conversation import (
    AttendantMessageRequest,
    AttendantMessageResponse,
    ConversationActionRequest,
    ConversationActionResponse,
)
from app.services.conversation_service import (
    SENDER_ATTENDANT,
    ConversationNotFoundError,
    append_message,
    get_attendant_conversations,
    get_conversation,
    get_queue,
    list_messages,
    serialize_conversation,
    transition_conversation,
)
from app.services.notification_service import NotificationBus, get_notification_bus
from app.services.phone_service import to_chat_id
from app.services.state_machine import (
    ConversationState,
    InvalidTransitionError,
    attendant_resolve,
    attendant_take,
    cancel_escalation,
    escalate,
    return_to_ai,
)
from app.services.tenant_service import TenantResolver, get_tenant_resolver
from app.services.whatsapp_service import WahaClient, get_gateway_client

router = APIRouter(prefix="/associations/{subdomain}/conversations", tags=["conversations"])
logger = get_logger("conversations_router")

ACTIONS = {
    "escalate": escalate,
    "take": attendant_take,
    "resolve": attendant_resolve,
    "cancel": cancel_escalation,
    "return": return_to_ai,
}
# Only the attendant holding the conversation may close it or hand it back.
HOLDER_ONLY_ACTIONS = frozenset({"resolve", "return"})


@router.get("/queue")
def list_queue(
    subdomain: str,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    association = resolve_association_or_error(db, resolver, subdomain)
    queue = get_queue(db, association.id)
    return {
        "count": len(queue),
        "conversations": [
            {**serialize_conversation(c), "patient_name": c.patient.name if c.patient else None} for c in queue
        ],
    }


@router.get("/mine")
def list_attendant_conversations(
    subdomain: str,
    attendant_id: str = Query(min_length=1),
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    association = resolve_association_or_error(db, resolver, subdomain)
    conversations = get_attendant_conversations(db, association.id, attendant_id)
    return {"conversations": [serialize_conversation(c) for c in conversations]}


@router.get("/{conversation_id}/messages")
def get_messages(
    subdomain: str,
    conversation_id: UUID,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    association = resolve_association_or_error(db, resolver, subdomain)
    try:
        conversation = get_conversation(db, conversation_id, association.id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")

    return {
        "conversation": serialize_conversation(conversation),
        "messages": [
            {
                "id": str(m.id),
                "content": m.content,
                "sender_type": m.sender_type,
                "sender_id": m.sender_id,
                "timestamp": m.timestamp.isoformat(),
            }
            for m in list_messages(db, conversation.id)
        ],
    }


@router.post("/{conversation_id}/actions", response_model=ConversationActionResponse)
def handle_action(
    subdomain: str,
    conversation_id: UUID,
    request: ConversationActionRequest,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
    bus: NotificationBus = Depends(get_notification_bus),
):
    """Attendant action (escalate/take/resolve/cancel/return)."""
    association = resolve_association_or_error(db, resolver, subdomain)

    try:
        conversation = get_conversation(db, conversation_id, association.id)
        if (
            request.action in HOLDER_ONLY_ACTIONS
            and conversation.attendant_id
            and conversation.attendant_id != request.actor_id
        ):
            raise HTTPException(status_code=403, detail="Conversation is held by another attendant")
        target = ACTIONS[request.action](ConversationState(conversation.status))

        old_state, conversation = transition_conversation(
            db,
            conversation.id,
            target,
            request.actor_id,
            bus=bus,
            reason=request.reason or request.action,
        )
        db.commit()
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except InvalidTransitionError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    return ConversationActionResponse(
        success=True,
        conversation_id=conversation.id,
        action=request.action,
        old_state=old_state.value,
        new_state=conversation.status,
    )


@router.post("/{conversation_id}/send", response_model=AttendantMessageResponse)
async def send_attendant_message(
    subdomain: str,
    conversation_id: UUID,
    request: AttendantMessageRequest,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
    gateway: WahaClient = Depends(get_gateway_client),
):
    """Attendant reply. Only the attendant holding the conversation (com_humano) may write."""
    association = resolve_association_or_error(db, resolver, subdomain)
    try:
        conversation = get_conversation(db, conversation_id, association.id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")

    if conversation.status != ConversationState.COM_HUMANO.value:
        raise HTTPException(status_code=409, detail=f"Conversation is {conversation.status}, not com_humano")
    if conversation.attendant_id and conversation.attendant_id != request.actor_id:
        raise HTTPException(status_code=403, detail="Conversation is held by another attendant")

    message = append_message(db, conversation, request.text, SENDER_ATTENDANT, request.actor_id)
    session: Optional[str] = association.whatsapp_session
    result = await gateway.send_text(session or "default", to_chat_id(conversation.patient.whatsapp), request.text)
    message.message_metadata = result.as_delivery_metadata()
    db.commit()
    logger.info(
        "Attendant message recorded",
        extra={"context": {"conversation_id": str(conversation.id), "actor": request.actor_id, "delivered": result.ok}},
    )

    return AttendantMessageResponse(
        success=True,
        message_id=message.id,
        delivered=result.ok,
        delivery_error=result.error,
    )

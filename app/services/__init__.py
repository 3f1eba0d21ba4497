from app.services.conversation_service import (
    append_message,
    find_open_conversation,
    find_or_create_open_conversation,
    list_messages,
    transition_conversation,
)
from app.services.phone_service import InvalidPhoneError, normalize_phone, phone_variants
from app.services.state_machine import (
    ConversationState,
    InvalidTransitionError,
    attendant_resolve,
    attendant_take,
    can_transition,
    cancel_escalation,
    escalate,
    return_to_ai,
    transition,
)

from enum import Enum


class ConversationState(str, Enum):
    COM_IA = "com_ia"
    FILA_HUMANO = "fila_humano"
    COM_HUMANO = "com_humano"
    RESOLVIDA = "resolvida"


OPEN_STATES = frozenset({ConversationState.COM_IA, ConversationState.FILA_HUMANO, ConversationState.COM_HUMANO})

VALID_TRANSITIONS = {
    ConversationState.COM_IA: [ConversationState.FILA_HUMANO],
    ConversationState.FILA_HUMANO: [ConversationState.COM_HUMANO, ConversationState.COM_IA],
    ConversationState.COM_HUMANO: [ConversationState.RESOLVIDA, ConversationState.COM_IA],
    ConversationState.RESOLVIDA: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConversationState, to_state: ConversationState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ConversationState, to_state: ConversationState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ConversationState, to_state: ConversationState) -> ConversationState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def escalate(current_state: ConversationState) -> ConversationState:
    """AI hands the conversation to the human queue."""
    return transition(current_state, ConversationState.FILA_HUMANO)


def attendant_take(current_state: ConversationState) -> ConversationState:
    return transition(current_state, ConversationState.COM_HUMANO)


def attendant_resolve(current_state: ConversationState) -> ConversationState:
    """Terminal. The next inbound message opens a new conversation."""
    return transition(current_state, ConversationState.RESOLVIDA)


def cancel_escalation(current_state: ConversationState) -> ConversationState:
    """Leave the queue before anyone takes it, back to the AI."""
    if current_state != ConversationState.FILA_HUMANO:
        raise InvalidTransitionError(current_state, ConversationState.COM_IA)
    return transition(current_state, ConversationState.COM_IA)


def return_to_ai(current_state: ConversationState) -> ConversationState:
    """Attendant hands an active conversation back to the AI."""
    if current_state != ConversationState.COM_HUMANO:
        raise InvalidTransitionError(current_state, ConversationState.COM_IA)
    return transition(current_state, ConversationState.COM_IA)

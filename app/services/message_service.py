from typing import Optional

from app.models import Conversation
from app.services.patient_service import InterlocutorContext

HANDOFF_MESSAGE = (
    "Obrigado! Agora vou conectar você com um de nossos atendentes. "
    "Em breve alguém da equipe continuará o seu atendimento por aqui."
)


class ReplyGenerator:
    """Produces the AI reply for a patient message."""

    def generate(self, conversation: Conversation, text: str, context: Optional[InterlocutorContext]) -> str:
        raise NotImplementedError


class TemplateReplyGenerator(ReplyGenerator):
    """Acknowledgement reply. Addresses whoever is texting, not necessarily the patient."""

    def generate(self, conversation: Conversation, text: str, context: Optional[InterlocutorContext]) -> str:
        greeting = "Olá!"
        if context and context.interlocutor_name:
            first_name = context.interlocutor_name.split()[0]
            greeting = f"Olá, {first_name}!"

        reply = f'{greeting} Recebi sua mensagem: "{text.strip()}".'
        if context and context.is_responsible and context.patient_name:
            reply += f" Vou seguir com o atendimento de {context.patient_name}."
        return reply


def handoff_message() -> str:
    return HANDOFF_MESSAGE


def get_reply_generator() -> ReplyGenerator:
    return TemplateReplyGenerator()

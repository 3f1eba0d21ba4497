from app.models.association import Association
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.patient import Patient

__all__ = [
    "Association",
    "Patient",
    "Conversation",
    "Message",
]

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.types import JSONType


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    sender_type = Column(Text, nullable=False)  # paciente, ia, atendente, sistema
    sender_id = Column(Text)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)

    conversation = relationship("Conversation", back_populates="messages")

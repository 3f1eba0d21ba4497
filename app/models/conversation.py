import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, Uuid, text
from sqlalchemy.orm import relationship

from app.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # At most one non-terminal conversation per patient.
        Index(
            "uq_conversations_open_patient",
            "patient_id",
            unique=True,
            postgresql_where=text("status <> 'resolvida'"),
            sqlite_where=text("status <> 'resolvida'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, ForeignKey("patients.id"), nullable=False, index=True)
    status = Column(Text, nullable=False, default="com_ia")  # com_ia, fila_humano, com_humano, resolvida
    attendant_id = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    queued_at = Column(DateTime(timezone=True))
    ended_at = Column(DateTime(timezone=True))

    patient = relationship("Patient", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation", order_by="Message.timestamp")

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.types import JSONType


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (UniqueConstraint("association_id", "whatsapp", name="uq_patients_association_whatsapp"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    association_id = Column(Uuid, ForeignKey("associations.id"), nullable=False, index=True)
    whatsapp = Column(Text, nullable=False)  # canonical phone key
    name = Column(Text)
    cpf = Column(Text)
    email = Column(Text)
    status = Column(Text, nullable=False, default="LEAD")  # LEAD, MEMBRO
    external_id = Column(Text)  # directory record id
    relationship_type = Column(Text)  # tipo_associacao: assoc_paciente, assoc_respon
    responsible_name = Column(Text)
    responsible_cpf = Column(Text)
    directory_fields = Column(JSONType, nullable=False, default=dict)
    last_sync_at = Column(DateTime(timezone=True))
    sync_status = Column(Text)  # synced, not_found, directory_unavailable, directory_unauthorized
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))

    association = relationship("Association", back_populates="patients")
    conversations = relationship("Conversation", back_populates="patient")

import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.types import JSONType


class Association(Base):
    __tablename__ = "associations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    subdomain = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    wordpress_url = Column(Text)
    wordpress_auth = Column(JSONType, nullable=False, default=dict)  # username, password, api_key
    whatsapp_session = Column(Text, unique=True)  # gateway session bound to this tenant
    public_display_name = Column(Text)
    logo_url = Column(Text)
    welcome_message = Column(Text)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    patients = relationship("Patient", back_populates="association")

    @property
    def display_name(self) -> str:
        return self.public_display_name or self.name

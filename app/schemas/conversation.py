from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ConversationActionRequest(BaseModel):
    action: Literal["escalate", "take", "resolve", "cancel", "return"]
    actor_id: str = Field(min_length=1)
    reason: Optional[str] = None


class ConversationActionResponse(BaseModel):
    success: bool
    conversation_id: UUID
    action: str
    old_state: str
    new_state: str


class AttendantMessageRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    text: str = Field(min_length=1)


class AttendantMessageResponse(BaseModel):
    success: bool
    message_id: UUID
    delivered: bool
    delivery_error: Optional[str] = None


class MonitorActionRequest(BaseModel):
    action: Literal["start", "stop", "check_now"]

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WahaMessagePayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    timestamp: Optional[int] = None
    from_: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "from_"))
    fromMe: bool = False
    body: Optional[str] = None
    type: Optional[str] = "chat"
    notifyName: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("notifyName", "pushName", "pushname"),
    )
    hasMedia: bool = False


class WahaEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str
    session: Optional[str] = None
    payload: Optional[WahaMessagePayload] = None
    me: Optional[Any] = None


class WebhookResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    conversation_id: Optional[str] = None
    conversation_status: Optional[str] = None
    escalated: bool = False

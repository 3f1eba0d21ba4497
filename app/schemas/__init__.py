from app.schemas.conversation import (
    AttendantMessageRequest,
    AttendantMessageResponse,
    ConversationActionRequest,
    ConversationActionResponse,
    MonitorActionRequest,
)
from app.schemas.patient import (
    AssociationInfo,
    CompleteRegistrationRequest,
    PatientValidationResponse,
    ValidateWhatsappRequest,
)
from app.schemas.webhook import WahaEvent, WahaMessagePayload, WebhookResponse

__all__ = [
    "WahaEvent",
    "WahaMessagePayload",
    "WebhookResponse",
    "ValidateWhatsappRequest",
    "CompleteRegistrationRequest",
    "PatientValidationResponse",
    "AssociationInfo",
    "ConversationActionRequest",
    "ConversationActionResponse",
    "AttendantMessageRequest",
    "AttendantMessageResponse",
    "MonitorActionRequest",
]

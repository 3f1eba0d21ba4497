from typing import Any, Optional

from pydantic import BaseModel, Field


class ValidateWhatsappRequest(BaseModel):
    whatsapp: str = Field(min_length=1)


class CompleteRegistrationRequest(BaseModel):
    whatsapp: str = Field(min_length=1)
    name: str = Field(min_length=1)
    cpf: str = Field(min_length=1)


class PatientValidationResponse(BaseModel):
    status: str  # patient_found, new_patient_step_2
    syncType: str
    patientData: Optional[dict[str, Any]] = None
    interlocutor: Optional[dict[str, Any]] = None
    directoryAvailable: bool = True


class AssociationInfo(BaseModel):
    subdomain: str
    name: str
    displayName: str
    logoUrl: Optional[str] = None
    welcomeMessage: Optional[str] = None

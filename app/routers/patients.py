from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.routers.associations import resolve_association_or_error
from app.schemas.patient import CompleteRegistrationRequest, PatientValidationResponse, ValidateWhatsappRequest
from app.services.directory_service import WordPressDirectoryClient, get_directory_client
from app.services.patient_service import (
    DirectoryUnavailableError,
    NeedsLeadCapture,
    complete_registration,
    reconcile,
    serialize_patient,
)
from app.services.phone_service import InvalidPhoneError
from app.services.tenant_service import TenantResolver, get_tenant_resolver

router = APIRouter(prefix="/patients", tags=["patients"])
logger = get_logger("patients_router")


def _tenant_key(request: Request, slug: Optional[str], header_subdomain: Optional[str]) -> Optional[str]:
    return slug or header_subdomain or request.headers.get("host")


@router.post("/validate-whatsapp", response_model=PatientValidationResponse)
async def validate_whatsapp(
    body: ValidateWhatsappRequest,
    request: Request,
    slug: Optional[str] = Query(default=None),
    x_tenant_subdomain: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    directory: WordPressDirectoryClient = Depends(get_directory_client),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    """Step 1 of onboarding: known patient, or ask for name and CPF."""
    association = resolve_association_or_error(db, resolver, _tenant_key(request, slug, x_tenant_subdomain))

    try:
        result = await reconcile(db, association, body.whatsapp, directory=directory)
    except InvalidPhoneError as e:
        raise HTTPException(status_code=400, detail=f"Invalid WhatsApp number: {e.reason}")
    except NeedsLeadCapture:
        db.commit()
        return PatientValidationResponse(status="new_patient_step_2", syncType="lead_capture")
    except DirectoryUnavailableError as e:
        # Nothing is stored; step 2 collects the data the directory could not confirm.
        db.rollback()
        logger.warning(
            "Directory unavailable, falling back to manual lead capture",
            extra={"context": {"association": association.subdomain, "error": str(e)}},
        )
        return PatientValidationResponse(
            status="new_patient_step_2", syncType="lead_capture", directoryAvailable=False
        )

    db.commit()
    return PatientValidationResponse(
        status="patient_found",
        syncType=result.sync_type.value,
        patientData=serialize_patient(result.patient),
        interlocutor=asdict(result.interlocutor),
    )


@router.post("/complete-registration")
def complete_patient_registration(
    body: CompleteRegistrationRequest,
    request: Request,
    slug: Optional[str] = Query(default=None),
    x_tenant_subdomain: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    """Step 2 of onboarding: store the contact as a LEAD with name and CPF."""
    association = resolve_association_or_error(db, resolver, _tenant_key(request, slug, x_tenant_subdomain))

    cpf_digits = "".join(ch for ch in body.cpf if ch.isdigit())
    if len(cpf_digits) != 11:
        raise HTTPException(status_code=400, detail="CPF must have 11 digits")

    try:
        result = complete_registration(db, association, body.whatsapp, body.name, cpf_digits)
    except InvalidPhoneError as e:
        raise HTTPException(status_code=400, detail=f"Invalid WhatsApp number: {e.reason}")

    db.commit()
    return {
        "success": True,
        "syncType": result.sync_type.value,
        "patient": serialize_patient(result.patient),
    }

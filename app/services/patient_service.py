"""Patient reconciliation between the local store and the association directory.

A contact is identified per tenant by its canonical phone key. Every inbound
contact goes through `reconcile`, which decides whether the local row is fresh
enough, refreshes it from the directory (MEMBRO), creates a LEAD from form data
or asks the caller to capture one.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Association, Patient
from app.services.directory_service import (
    DirectoryRecord,
    DirectoryStatus,
    WordPressDirectoryClient,
)
from app.services.phone_service import format_phone_mask, normalize_phone, phone_variants

logger = get_logger("patient_service")

STATUS_LEAD = "LEAD"
STATUS_MEMBRO = "MEMBRO"
RESPONSIBLE_RELATIONSHIP = "assoc_respon"

# Logical attribute -> directory keys, in priority order. Directory schemas changed
# over time and differ per association; the first non-empty value wins.
DIRECTORY_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("nome_completo", "nome", "name"),
    "cpf": ("cpf", "cpf_paciente"),
    "email": ("email", "e_mail"),
    "relationship_type": ("tipo_associacao", "tipo_de_associacao"),
    "responsible_name": ("nome_responsavel", "nome_completo_responc", "responsavel_nome"),
    "responsible_cpf": ("cpf_responsavel", "cpf_do_responsavel", "responsavel_cpf"),
}


class SyncType(str, Enum):
    EXISTING = "existing"
    SYNCED_FROM_DIRECTORY = "synced_from_directory"
    DEGRADED = "degraded"
    LEAD_CREATED = "lead_created"


class DirectoryUnavailableError(Exception):
    """The directory could not be checked and there is no local record to fall back on."""

    def __init__(self, phone: str, reason: Optional[str] = None):
        self.phone = phone
        self.reason = reason
        super().__init__(f"Directory unavailable for {phone}: {reason}")


class DirectoryUnauthorizedError(DirectoryUnavailableError):
    pass


class NeedsLeadCapture(Exception):
    """Contact unknown everywhere and no form data supplied; nothing was created."""

    def __init__(self, phone: str):
        self.phone = phone
        super().__init__(f"No patient for {phone}, lead capture required")


@dataclass
class LeadFormData:
    name: Optional[str] = None
    cpf: Optional[str] = None
    email: Optional[str] = None

    def cleaned(self) -> dict[str, str]:
        values = {"name": _clean_text(self.name), "cpf": _clean_document(self.cpf), "email": _clean_text(self.email)}
        return {key: value for key, value in values.items() if value}


@dataclass
class InterlocutorContext:
    """Who is texting versus who the care is for. Never collapsed into one name."""

    interlocutor_name: Optional[str]
    patient_name: Optional[str]
    is_responsible: bool
    relationship_type: Optional[str] = None


@dataclass
class ReconciliationResult:
    patient: Patient
    sync_type: SyncType
    interlocutor: InterlocutorContext


def _clean_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _clean_document(value: Any) -> Optional[str]:
    text = _clean_text(value)
    if not text:
        return None
    digits = "".join(ch for ch in text if ch.isdigit())
    return digits or None


def resolve_alias(fields: dict[str, Any], attribute: str) -> Optional[str]:
    for key in DIRECTORY_FIELD_ALIASES[attribute]:
        value = _clean_text(fields.get(key))
        if value:
            return value
    return None


def map_directory_fields(record: DirectoryRecord) -> dict[str, Optional[str]]:
    fields = record.custom_fields
    mapped = {attribute: resolve_alias(fields, attribute) for attribute in DIRECTORY_FIELD_ALIASES}
    mapped["name"] = mapped["name"] or _clean_text(record.name)
    mapped["email"] = mapped["email"] or _clean_text(record.email)
    mapped["cpf"] = _clean_document(mapped["cpf"])
    mapped["responsible_cpf"] = _clean_document(mapped["responsible_cpf"])
    return mapped


def build_interlocutor_context(patient: Patient) -> InterlocutorContext:
    is_responsible = bool(patient.responsible_name) or patient.relationship_type == RESPONSIBLE_RELATIONSHIP
    return InterlocutorContext(
        interlocutor_name=(patient.responsible_name or patient.name) if is_responsible else patient.name,
        patient_name=patient.name,
        is_responsible=is_responsible,
        relationship_type=patient.relationship_type,
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_sync_fresh(patient: Patient, now: Optional[datetime] = None, staleness_minutes: Optional[int] = None) -> bool:
    last_sync = _as_utc(patient.last_sync_at)
    if last_sync is None:
        return False
    window = staleness_minutes if staleness_minutes is not None else settings.patient_sync_staleness_minutes
    return (now or _now()) - last_sync < timedelta(minutes=window)


def find_patient_by_whatsapp(db: Session, association_id, canonical: str) -> Optional[Patient]:
    return (
        db.query(Patient)
        .filter(Patient.association_id == association_id, Patient.whatsapp == canonical)
        .first()
    )


def _insert_patient(db: Session, association: Association, canonical: str, values: dict[str, Any]) -> Patient:
    """Insert under a savepoint. A concurrent insert for the same phone wins and is returned."""
    now = _now()
    patient = Patient(
        association_id=association.id,
        whatsapp=canonical,
        created_at=now,
        updated_at=now,
        directory_fields={},
        **values,
    )
    try:
        with db.begin_nested():
            db.add(patient)
            db.flush()
        return patient
    except IntegrityError:
        existing = find_patient_by_whatsapp(db, association.id, canonical)
        if existing is None:
            raise
        logger.warning(
            "Concurrent patient insert resolved to existing row",
            extra={"context": {"association": association.subdomain, "patient_id": str(existing.id)}},
        )
        return existing


def _apply_directory_record(patient: Patient, record: DirectoryRecord, now: datetime) -> None:
    mapped = map_directory_fields(record)
    for attribute, value in mapped.items():
        if value:
            setattr(patient, attribute, value)
    # Responsible-party fields follow the directory exactly, including removal.
    patient.responsible_name = mapped["responsible_name"]
    patient.responsible_cpf = mapped["responsible_cpf"]
    patient.status = STATUS_MEMBRO
    patient.external_id = record.external_id
    patient.directory_fields = dict(record.custom_fields)
    patient.last_sync_at = now
    patient.sync_status = "synced"
    patient.updated_at = now


def sync_from_directory(
    db: Session,
    association: Association,
    canonical: str,
    record: DirectoryRecord,
    patient: Optional[Patient] = None,
) -> Patient:
    """Create or refresh the local row from a directory record (status MEMBRO)."""
    now = _now()
    if patient is None:
        patient = _insert_patient(db, association, canonical, {"status": STATUS_MEMBRO})
    _apply_directory_record(patient, record, now)
    db.flush()

    if not record.custom_fields:
        logger.warning(
            "Directory record without custom fields, synced with profile data only",
            extra={"context": {"patient_id": str(patient.id), "external_id": record.external_id}},
        )
    logger.info(
        "Patient synced from directory",
        extra={
            "context": {
                "association": association.subdomain,
                "patient_id": str(patient.id),
                "external_id": record.external_id,
                "has_responsible": bool(patient.responsible_name),
            }
        },
    )
    return patient


def create_lead(
    db: Session,
    association: Association,
    raw_phone: str,
    form_data: Optional[LeadFormData] = None,
) -> Patient:
    """Create (or return) a LEAD holding only what the caller supplied."""
    canonical = normalize_phone(raw_phone)
    existing = find_patient_by_whatsapp(db, association.id, canonical)
    if existing is not None:
        return existing

    values = (form_data or LeadFormData()).cleaned()
    patient = _insert_patient(db, association, canonical, {"status": STATUS_LEAD, "external_id": None, **values})
    logger.info(
        "Lead created",
        extra={"context": {"association": association.subdomain, "patient_id": str(patient.id)}},
    )
    return patient


def _fill_form_fields(patient: Patient, form_data: Optional[LeadFormData]) -> None:
    if form_data is None:
        return
    for attribute, value in form_data.cleaned().items():
        if not getattr(patient, attribute):
            setattr(patient, attribute, value)


def _result(patient: Patient, sync_type: SyncType) -> ReconciliationResult:
    return ReconciliationResult(
        patient=patient,
        sync_type=sync_type,
        interlocutor=build_interlocutor_context(patient),
    )


async def reconcile(
    db: Session,
    association: Association,
    raw_phone: str,
    form_data: Optional[LeadFormData] = None,
    *,
    directory: WordPressDirectoryClient,
    staleness_minutes: Optional[int] = None,
) -> ReconciliationResult:
    """Resolve a phone to a Patient of this association.

    Raises InvalidPhoneError, DirectoryUnavailableError (or its Unauthorized
    subclass) when the directory is down and nothing is stored locally, and
    NeedsLeadCapture when the contact is unknown and no form data was given.
    """
    canonical = normalize_phone(raw_phone)
    patient = find_patient_by_whatsapp(db, association.id, canonical)
    now = _now()

    if patient is not None and is_sync_fresh(patient, now, staleness_minutes):
        return _result(patient, SyncType.EXISTING)

    lookup = await directory.find_by_phone(association, phone_variants(canonical))

    if lookup.status in (DirectoryStatus.UNAVAILABLE, DirectoryStatus.UNAUTHORIZED):
        if patient is not None:
            patient.sync_status = f"directory_{lookup.status.value}"
            db.flush()
            logger.warning(
                "Serving stale patient, directory not reachable",
                extra={"context": {"patient_id": str(patient.id), "directory_status": lookup.status.value}},
            )
            return _result(patient, SyncType.DEGRADED)
        if lookup.status == DirectoryStatus.UNAUTHORIZED:
            raise DirectoryUnauthorizedError(canonical, lookup.error)
        raise DirectoryUnavailableError(canonical, lookup.error)

    if lookup.status == DirectoryStatus.FOUND:
        patient = sync_from_directory(db, association, canonical, lookup.record, patient)
        return _result(patient, SyncType.SYNCED_FROM_DIRECTORY)

    if patient is not None:
        if patient.status == STATUS_MEMBRO:
            logger.warning(
                "Member no longer found in directory, keeping stored status",
                extra={"context": {"patient_id": str(patient.id), "external_id": patient.external_id}},
            )
        _fill_form_fields(patient, form_data)
        patient.last_sync_at = now
        patient.sync_status = "not_found"
        patient.updated_at = now
        db.flush()
        return _result(patient, SyncType.EXISTING)

    if form_data is None:
        raise NeedsLeadCapture(canonical)

    patient = create_lead(db, association, canonical, form_data)
    patient.last_sync_at = now
    patient.sync_status = "not_found"
    db.flush()
    return _result(patient, SyncType.LEAD_CREATED)


def complete_registration(
    db: Session,
    association: Association,
    raw_phone: str,
    name: str,
    cpf: str,
) -> ReconciliationResult:
    """Second onboarding step after NeedsLeadCapture: store name and CPF as a LEAD."""
    patient = create_lead(db, association, raw_phone, LeadFormData(name=name, cpf=cpf))
    _fill_form_fields(patient, LeadFormData(name=name, cpf=cpf))
    db.flush()
    sync_type = SyncType.LEAD_CREATED if patient.status == STATUS_LEAD else SyncType.EXISTING
    return _result(patient, sync_type)


def serialize_patient(patient: Patient) -> dict[str, Any]:
    return {
        "id": str(patient.id),
        "name": patient.name,
        "whatsapp": patient.whatsapp,
        "whatsapp_display": format_phone_mask(patient.whatsapp),
        "status": patient.status,
        "cpf": patient.cpf,
        "email": patient.email,
        "relationship_type": patient.relationship_type,
        "responsible_name": patient.responsible_name,
        "responsible_cpf": patient.responsible_cpf,
        "external_id": patient.external_id,
    }

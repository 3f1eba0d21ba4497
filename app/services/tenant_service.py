import re
import threading
import time
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Association

logger = get_logger("tenant_service")

RESERVED_SUBDOMAINS = {
    "www",
    "api",
    "admin",
    "mail",
    "ftp",
    "blog",
    "support",
    "help",
    "docs",
    "status",
    "app",
    "dashboard",
    "portal",
}

_SUBDOMAIN_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$")
_IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")


class TenantNotFoundError(Exception):
    def __init__(self, key: str | None):
        self.key = key
        super().__init__(f"Association '{key}' not found")


class TenantInactiveError(Exception):
    def __init__(self, association: Association):
        self.association = association
        super().__init__(f"Association '{association.subdomain}' is inactive")


def extract_subdomain(host: str | None) -> str | None:
    """Tenant key from a Host header. No fallback tenant for localhost or bare IPs."""
    if not host:
        return None
    hostname = host.split(":", 1)[0].strip().lower()
    if not hostname or hostname == "localhost" or _IPV4_RE.match(hostname):
        return None

    parts = hostname.split(".")
    if len(parts) >= 2 and parts[0]:
        return parts[0]
    return None


def is_valid_subdomain(subdomain: str | None) -> bool:
    if not subdomain or not _SUBDOMAIN_RE.match(subdomain):
        return False
    if len(subdomain) < 3 or len(subdomain) > 63:
        return False
    return subdomain.lower() not in RESERVED_SUBDOMAINS


class TenantResolver:
    """Resolve hosts, slugs and gateway sessions to an active Association.

    Only the subdomain -> id mapping is cached, for a short TTL. The row is
    re-read on every resolve so a deactivation is visible immediately.
    """

    def __init__(self, ttl_seconds: float = 30.0):
        self.ttl_seconds = ttl_seconds
        self._ids: dict[str, tuple[UUID, float]] = {}
        self._lock = threading.Lock()

    def _cached_id(self, subdomain: str) -> UUID | None:
        with self._lock:
            entry = self._ids.get(subdomain)
            if entry is None:
                return None
            association_id, stored_at = entry
            if time.monotonic() - stored_at > self.ttl_seconds:
                self._ids.pop(subdomain, None)
                return None
            return association_id

    def _remember(self, subdomain: str, association_id: UUID) -> None:
        with self._lock:
            self._ids[subdomain] = (association_id, time.monotonic())

    def invalidate(self, subdomain: str | None = None) -> None:
        with self._lock:
            if subdomain is None:
                self._ids.clear()
            else:
                self._ids.pop(subdomain.lower(), None)

    def _lookup(self, db: Session, subdomain: str) -> Association | None:
        association_id = self._cached_id(subdomain)
        if association_id is not None:
            association = db.get(Association, association_id)
            if association is not None and association.subdomain == subdomain:
                return association
            self.invalidate(subdomain)

        association = db.query(Association).filter(Association.subdomain == subdomain).first()
        if association is not None:
            self._remember(subdomain, association.id)
        return association

    def resolve(self, db: Session, host_or_slug: str | None) -> Association:
        key = (host_or_slug or "").strip().lower()
        subdomain = extract_subdomain(key) if ("." in key or ":" in key) else key
        if not is_valid_subdomain(subdomain):
            raise TenantNotFoundError(host_or_slug)

        association = self._lookup(db, subdomain)
        return _ensure_active(association, subdomain)

    def resolve_by_session(self, db: Session, session: str | None) -> Association:
        if not session:
            raise TenantNotFoundError(session)
        association = db.query(Association).filter(Association.whatsapp_session == session).first()
        return _ensure_active(association, session)


def _ensure_active(association: Association | None, key: str) -> Association:
    if association is None:
        logger.info("Tenant not found", extra={"context": {"key": key}})
        raise TenantNotFoundError(key)
    if not association.is_active:
        logger.warning(
            "Tenant inactive",
            extra={"context": {"key": key, "association_id": str(association.id)}},
        )
        raise TenantInactiveError(association)
    return association


def deactivate_association(db: Session, association: Association, resolver: TenantResolver) -> Association:
    """Hide a tenant from resolution without deleting any of its data."""
    association.is_active = False
    association.updated_at = datetime.now(timezone.utc)
    db.flush()
    resolver.invalidate(association.subdomain)
    logger.info("Association deactivated", extra={"context": {"subdomain": association.subdomain}})
    return association


tenant_resolver = TenantResolver(ttl_seconds=settings.tenant_cache_ttl_seconds)


def get_tenant_resolver() -> TenantResolver:
    return tenant_resolver

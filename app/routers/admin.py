"""Operational endpoints: invariant checks and tenant maintenance."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import Association
from app.services.conversation_service import find_open_conversation_violations
from app.services.directory_service import WordPressDirectoryClient, get_directory_client
from app.services.tenant_service import TenantResolver, deactivate_association, get_tenant_resolver

router = APIRouter(prefix="/admin", tags=["admin"])
logger = get_logger("admin")


def require_admin_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Dependency guarding maintenance routes with the X-Admin-Token header."""
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _get_association(db: Session, subdomain: str) -> Association:
    association = db.query(Association).filter(Association.subdomain == subdomain.lower()).first()
    if not association:
        raise HTTPException(status_code=404, detail=f"Association '{subdomain}' not found")
    return association


@router.get("/health")
def get_system_health(db: Session = Depends(get_db)):
    """Database reachability plus the one-open-conversation-per-patient invariant."""
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", extra={"context": {"error": str(e)}})
        return {"status": "unhealthy", "database": "error", "violations": []}

    violations = find_open_conversation_violations(db)
    return {
        "status": "healthy" if not violations else "degraded",
        "database": "ok",
        "violations": violations,
    }


@router.post("/associations/{subdomain}/deactivate", dependencies=[Depends(require_admin_token)])
def deactivate(
    subdomain: str,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    association = _get_association(db, subdomain)
    deactivate_association(db, association, resolver)
    db.commit()
    return {"subdomain": association.subdomain, "is_active": association.is_active}


@router.get("/associations/{subdomain}/directory-check", dependencies=[Depends(require_admin_token)])
async def check_directory(
    subdomain: str,
    db: Session = Depends(get_db),
    directory: WordPressDirectoryClient = Depends(get_directory_client),
):
    """Probe the association's directory credentials."""
    association = _get_association(db, subdomain)
    lookup = await directory.test_connection(association)
    return {"subdomain": association.subdomain, "status": lookup.status.value, "error": lookup.error}

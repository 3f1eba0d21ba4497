from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import Association
from app.schemas.patient import AssociationInfo
from app.services.tenant_service import (
    TenantInactiveError,
    TenantNotFoundError,
    TenantResolver,
    get_tenant_resolver,
)

router = APIRouter(prefix="/associations", tags=["associations"])


def resolve_association_or_error(db: Session, resolver: TenantResolver, key: Optional[str]) -> Association:
    """Tenant lookup for HTTP handlers: 404 unknown, 403 deactivated. Never a default tenant."""
    try:
        return resolver.resolve(db, key)
    except TenantNotFoundError:
        raise HTTPException(status_code=404, detail=f"Association '{key}' not found")
    except TenantInactiveError:
        raise HTTPException(status_code=403, detail="Service suspended for this association")


@router.get("/{subdomain}/info", response_model=AssociationInfo)
def get_association_info(
    subdomain: str,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    """Public tenant info for the onboarding screen."""
    association = resolve_association_or_error(db, resolver, subdomain)
    return AssociationInfo(
        subdomain=association.subdomain,
        name=association.name,
        displayName=association.display_name,
        logoUrl=association.logo_url,
        welcomeMessage=association.welcome_message,
    )

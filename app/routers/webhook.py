import hmac
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import Association
from app.routers.associations import resolve_association_or_error
from app.schemas.webhook import WahaEvent, WebhookResponse
from app.services.conversation_service import DuplicateConversationError
from app.services.directory_service import WordPressDirectoryClient, get_directory_client
from app.services.escalation_service import EscalationPolicy, get_escalation_policy
from app.services.inbound_service import handle_inbound, ignore_reason
from app.services.message_service import ReplyGenerator, get_reply_generator
from app.services.notification_service import NotificationBus, get_notification_bus
from app.services.state_machine import InvalidTransitionError
from app.services.tenant_service import (
    TenantInactiveError,
    TenantNotFoundError,
    TenantResolver,
    get_tenant_resolver,
)
from app.services.whatsapp_service import WahaClient, get_gateway_client

logger = get_logger("webhook")

router = APIRouter()


def _get_request_webhook_secret(request: Request) -> str | None:
    for header in ("shared-secret", "X-Webhook-Secret"):
        header_secret = request.headers.get(header)
        if header_secret:
            return header_secret.strip()
    return None


def _verify_webhook_secret(request: Request) -> None:
    expected = (settings.webhook_secret or "").strip()
    if not expected:
        logger.error("Webhook called but WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="WEBHOOK_SECRET not configured")
    provided = _get_request_webhook_secret(request)
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning(
            "Webhook rejected, invalid secret",
            extra={"context": {"client": request.client.host if request.client else None}},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


async def _parse_event(request: Request) -> WahaEvent:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    try:
        return WahaEvent.model_validate(data)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid webhook payload: {e.errors()}")


def _resolve_webhook_tenant(
    db: Session, resolver: TenantResolver, subdomain: Optional[str], session: Optional[str]
) -> Association:
    if subdomain:
        return resolve_association_or_error(db, resolver, subdomain)
    try:
        return resolver.resolve_by_session(db, session)
    except TenantNotFoundError:
        raise HTTPException(status_code=404, detail=f"No association bound to session '{session}'")
    except TenantInactiveError:
        raise HTTPException(status_code=403, detail="Service suspended for this association")


async def _process_webhook(
    request: Request,
    subdomain: Optional[str],
    db: Session,
    resolver: TenantResolver,
    directory: WordPressDirectoryClient,
    gateway: WahaClient,
    policy: EscalationPolicy,
    replier: ReplyGenerator,
    bus: NotificationBus,
) -> WebhookResponse:
    _verify_webhook_secret(request)
    event = await _parse_event(request)

    reason = ignore_reason(event)
    if reason:
        return WebhookResponse(status="ignored", reason=reason)

    association = _resolve_webhook_tenant(db, resolver, subdomain, event.session)

    try:
        outcome = await handle_inbound(db, event, association, directory, gateway, policy, replier, bus)
    except (DuplicateConversationError, InvalidTransitionError) as e:
        db.rollback()
        logger.error(
            "Inbound message rejected",
            extra={"context": {"association": association.subdomain, "error": str(e)}},
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if outcome.status == "ignored":
        return WebhookResponse(status="ignored", reason=outcome.reason)

    db.commit()
    return WebhookResponse(
        status="processed",
        conversation_id=str(outcome.conversation.id),
        conversation_status=outcome.conversation_status,
        escalated=outcome.escalated,
    )


@router.get("/webhook/whatsapp")
async def webhook_probe():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "whatsapp-webhook",
    }


@router.post("/webhook/whatsapp", response_model=WebhookResponse)
async def handle_whatsapp_webhook(
    request: Request,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
    directory: WordPressDirectoryClient = Depends(get_directory_client),
    gateway: WahaClient = Depends(get_gateway_client),
    policy: EscalationPolicy = Depends(get_escalation_policy),
    replier: ReplyGenerator = Depends(get_reply_generator),
    bus: NotificationBus = Depends(get_notification_bus),
):
    """WAHA webhook. The tenant is the association bound to the gateway session."""
    return await _process_webhook(request, None, db, resolver, directory, gateway, policy, replier, bus)


@router.post("/webhook/whatsapp/{subdomain}", response_model=WebhookResponse)
async def handle_whatsapp_webhook_for_tenant(
    subdomain: str,
    request: Request,
    db: Session = Depends(get_db),
    resolver: TenantResolver = Depends(get_tenant_resolver),
    directory: WordPressDirectoryClient = Depends(get_directory_client),
    gateway: WahaClient = Depends(get_gateway_client),
    policy: EscalationPolicy = Depends(get_escalation_policy),
    replier: ReplyGenerator = Depends(get_reply_generator),
    bus: NotificationBus = Depends(get_notification_bus),
):
    return await _process_webhook(request, subdomain, db, resolver, directory, gateway, policy, replier, bus)

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger, setup_logging
from app.models import Association, Conversation, Message, Patient
from app.routers import admin, associations, conversations, notifications, patients, webhook
from app.services.notification_service import NotificationBus, build_queue_monitor
from app.services.whatsapp_service import WahaClient, get_gateway_client

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="SatiZap API",
    description="Patient identity and conversation handoff service for cannabis associations",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.state.notification_bus = NotificationBus()
app.state.queue_monitor = build_queue_monitor(app.state.notification_bus)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(patients.router)
app.include_router(associations.router)
app.include_router(conversations.router)
app.include_router(notifications.router)
app.include_router(admin.router)


@app.on_event("startup")
async def start_queue_monitor() -> None:
    if not settings.queue_monitor_enabled:
        return
    app.state.queue_monitor.start()


@app.on_event("shutdown")
async def stop_queue_monitor() -> None:
    await app.state.queue_monitor.stop()
    app.state.notification_bus.close()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/waha")
async def waha_health(gateway: WahaClient = Depends(get_gateway_client)):
    result = await gateway.check_health()
    if not result.ok:
        logger.warning("WhatsApp gateway unhealthy", extra={"context": {"error": result.error}})
        return {"status": "unhealthy", "error": result.error, "code": result.error_code}
    return {"status": "ok", **result.value}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "associations": db.query(Association).count(),
        "patients": db.query(Patient).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
    }

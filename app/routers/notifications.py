from fastapi import APIRouter, Depends, Query

from app.routers.admin import require_admin_token
from app.schemas.conversation import MonitorActionRequest
from app.services.notification_service import (
    NotificationBus,
    QueueMonitor,
    get_notification_bus,
    get_queue_monitor,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    limit: int = Query(default=20, ge=1, le=100),
    bus: NotificationBus = Depends(get_notification_bus),
):
    return {"notifications": [n.to_dict() for n in bus.recent(limit)]}


@router.post("/monitor", dependencies=[Depends(require_admin_token)])
async def control_monitor(
    request: MonitorActionRequest,
    monitor: QueueMonitor = Depends(get_queue_monitor),
):
    """Start, stop or run the queue timeout monitor once."""
    if request.action == "start":
        changed = monitor.start()
        return {"action": "start", "changed": changed, "running": monitor.is_running}
    if request.action == "stop":
        changed = await monitor.stop()
        return {"action": "stop", "changed": changed, "running": monitor.is_running}

    published = monitor.check_now()
    return {
        "action": "check_now",
        "running": monitor.is_running,
        "published": [n.to_dict() for n in published],
    }

from fastapi import APIRouter, Depends, Query

from servmatch.deps import Services, get_services, raise_engine_http_error
from servmatch.errors import EngineError
from servmatch.models import DeviceTokenRegisterRequest, NotificationRecord
from servmatch.services.notification_dispatcher import NotificationInbox

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
async def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    services: Services = Depends(get_services),
):
    inbox = NotificationInbox(services.store, user_id, limit=limit)
    try:
        return await inbox.refresh(unread_only=unread_only)
    except EngineError as exc:
        raise_engine_http_error(exc)


@router.post("/register-device", response_model=dict)
async def register_device(payload: DeviceTokenRegisterRequest, services: Services = Depends(get_services)):
    services.dispatcher.register_device_token(user_id=payload.user_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.post("/read-all", response_model=dict)
async def mark_all_read(user_id: str = Query(...), services: Services = Depends(get_services)):
    inbox = NotificationInbox(services.store, user_id)
    try:
        updated = await inbox.mark_all_read()
    except EngineError as exc:
        raise_engine_http_error(exc)
    return {"status": "ok", "updated": updated}


@router.post("/{notification_id}/read", response_model=dict)
async def mark_notification_read(
    notification_id: str,
    user_id: str = Query(...),
    services: Services = Depends(get_services),
):
    inbox = NotificationInbox(services.store, user_id)
    try:
        await inbox.refresh()
        await inbox.mark_read(notification_id)
    except EngineError as exc:
        raise_engine_http_error(exc)
    return {"status": "ok", "id": notification_id, "unread_count": inbox.unread_count}

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from quoteflow.auth import assert_actor_authorized
from quoteflow.models import DeviceTokenRegisterRequest, NotificationRecord
from quoteflow.services.notification_store import notification_store

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return notification_store.list_for_user(user_id, unread_only=unread_only)


@router.get("/unread-count", response_model=dict)
def unread_count(user_id: str = Query(...), authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return {"user_id": user_id, "unread": notification_store.unread_count(user_id)}


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    if not payload.device_token.strip():
        raise HTTPException(
            status_code=400,
            detail={"kind": "invalid_input", "message": "device_token is required"},
        )
    created = notification_store.register_device_token(
        payload.user_id,
        payload.device_token,
        platform=payload.platform,
    )
    return {
        "status": "registered" if created else "already_registered",
        "push_enabled": notification_store.push_enabled,
    }


@router.post("/read-all", response_model=dict)
def mark_all_read(user_id: str = Query(...), authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return {"user_id": user_id, "marked_read": notification_store.mark_all_read(user_id)}


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    updated = notification_store.mark_read(user_id, notification_id)
    if updated is None:
        raise HTTPException(
            status_code=404,
            detail={"kind": "not_found", "message": "Notification not found"},
        )
    return updated

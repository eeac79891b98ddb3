from __future__ import annotations

from fastapi import APIRouter, Query, Request

from app.routes._deps import trace_id_from_request, user_id_from_request
from app.schemas import success_envelope
from app.store import store

router = APIRouter(prefix="/api/v1", tags=["notifications"])


@router.get("/notifications")
def list_notifications(request: Request, unread_only: bool = Query(default=False)):
    items = store.list_notifications(user_id=user_id_from_request(request), unread_only=unread_only)
    return success_envelope(
        {"items": items, "unread": sum(1 for item in items if not item["read"])},
        trace_id_from_request(request),
    )


@router.post("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, request: Request):
    updated = store.mark_notification_read(user_id=user_id_from_request(request), notification_id=notification_id)
    return success_envelope(updated, trace_id_from_request(request))

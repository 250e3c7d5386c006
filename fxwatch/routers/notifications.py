from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fxwatch.db.dal import Database
from fxwatch.models import NotificationPreference, NotificationRecord
from fxwatch.routers.deps import get_db

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", summary="In-app inbox for a user")
async def inbox(
    user_id: str = Query(..., min_length=1),
    unread_only: bool = Query(False),
    db: Database = Depends(get_db),
):
    messages = db.list_inbox(user_id, unread_only=unread_only)
    return {
        "user_id": user_id,
        "unread": db.unread_count(user_id),
        "items": [m.model_dump(mode="json") for m in messages],
    }


@router.post("/{message_id}/read", summary="Mark an inbox message read")
async def mark_read(
    message_id: int,
    user_id: Optional[str] = Query(None),
    db: Database = Depends(get_db),
):
    if not db.mark_inbox_read(message_id, user_id=user_id):
        raise HTTPException(status_code=404, detail=f"message {message_id} not found")
    return {"status": "ok", "id": message_id}


@router.get("/records", response_model=List[NotificationRecord], summary="Delivery history")
async def records(
    alert_id: Optional[int] = Query(None),
    user_id: Optional[str] = Query(None),
    db: Database = Depends(get_db),
):
    return db.list_notification_records(alert_id=alert_id, user_id=user_id)


@router.get("/preferences/{user_id}", response_model=NotificationPreference)
async def get_preferences(user_id: str, db: Database = Depends(get_db)):
    return db.get_preferences(user_id) or NotificationPreference()


@router.put("/preferences/{user_id}", response_model=NotificationPreference)
async def set_preferences(
    user_id: str, payload: NotificationPreference, db: Database = Depends(get_db)
):
    return db.set_preferences(user_id, payload)

from fastapi import APIRouter, HTTPException, Query
from starlette import status

from models.notifications import Notification
from schemas.notification_schemas import NotificationResponse
from utils.deps import db_dependency, user_dependency


router = APIRouter(
    prefix="/notifications",
    tags=["notifications"]
)


@router.get("", status_code=status.HTTP_200_OK, response_model=list[NotificationResponse])
async def list_notifications(user: user_dependency, db: db_dependency, unread_only: bool = False,
                             limit: int = Query(default=50, ge=1, le=200)):
    query = db.query(Notification).filter(Notification.user_id == user["user_id"])
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


@router.patch("/{notification_id}/read", status_code=status.HTTP_200_OK, response_model=NotificationResponse)
async def mark_read(notification_id: int, user: user_dependency, db: db_dependency):
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user["user_id"],
    ).first()
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")

    notification.read = True
    db.commit()
    db.refresh(notification)
    return notification

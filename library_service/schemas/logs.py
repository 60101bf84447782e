from datetime import datetime

from library_service.models.logs import NotificationType
from library_service.schemas.common import CamelModel


class HistoryRead(CamelModel):
    id: int
    user_id: int
    loan_id: int | None
    reservation_id: int | None
    event_type: str
    event_date: datetime


class ActivityLogRead(CamelModel):
    id: int
    user_id: int
    action: str
    details: str | None
    timestamp: datetime


class NotificationLogRead(CamelModel):
    id: int
    user_id: int
    type: NotificationType
    message: str
    delivered: bool
    error: str | None
    sent_at: datetime

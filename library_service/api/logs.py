from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from library_service.database import get_db
from library_service.dependencies import get_activity_log, get_notification_logs
from library_service.errors import Forbidden
from library_service.middleware.auth import get_current_user, require_capability
from library_service.schemas.common import ERROR_RESPONSES
from library_service.schemas.logs import ActivityLogRead, HistoryRead, NotificationLogRead
from library_service.security import Capability, Principal
from library_service.services.activity import ActivityLog, list_history
from library_service.services.notifications import NotificationLogStore

router = APIRouter(tags=["logs"], responses=ERROR_RESPONSES)


def _ensure_self_or_auditor(user: Principal, user_id: int) -> None:
    if not user.owns_or_can(user_id, Capability.READ_AUDIT):
        raise Forbidden("Cannot read another user's logs.")


@router.get("/histories/user/{user_id}", response_model=list[HistoryRead])
async def get_user_history(
    user_id: int,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _ensure_self_or_auditor(user, user_id)
    return await list_history(db, user_id)


@router.get("/notification-logs/user/{user_id}", response_model=list[NotificationLogRead])
async def get_user_notifications(
    user_id: int,
    user: Principal = Depends(get_current_user),
    notification_logs: NotificationLogStore = Depends(get_notification_logs),
):
    _ensure_self_or_auditor(user, user_id)
    return await notification_logs.for_user(user_id)


@router.get("/audit-logs/user/{user_id}", response_model=list[ActivityLogRead])
async def get_user_activity(
    user_id: int,
    _: Principal = Depends(require_capability(Capability.READ_AUDIT)),
    activity_log: ActivityLog = Depends(get_activity_log),
):
    return await activity_log.for_user(user_id)

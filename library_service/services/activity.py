"""History events and the user activity log.

History rows are written in the caller's session and commit with the business
change. Activity documents are written after commit in a session of their
own; a failing write is logged and never reaches the caller.
"""
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from library_service.models.base import utcnow
from library_service.models.circulation import History
from library_service.models.logs import UserActivityLog

logger = logging.getLogger(__name__)


def record_history(
    session: AsyncSession,
    user_id: int,
    event_type: str,
    *,
    loan_id: int | None = None,
    reservation_id: int | None = None,
    at: datetime | None = None,
) -> History:
    entry = History(
        user_id=user_id,
        event_type=event_type,
        loan_id=loan_id,
        reservation_id=reservation_id,
        event_date=at or utcnow(),
    )
    session.add(entry)
    return entry


async def list_history(session: AsyncSession, user_id: int) -> list[History]:
    result = await session.execute(
        select(History).where(History.user_id == user_id).order_by(History.event_date.desc(), History.id.desc())
    )
    return list(result.scalars())


class ActivityLog:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def log(self, user_id: int, action: str, details: str | None = None) -> None:
        try:
            async with self._session_factory() as session:
                session.add(UserActivityLog(user_id=user_id, action=action, details=details))
                await session.commit()
        except Exception:
            logger.exception("Activity log write failed: user_id=%s action=%s", user_id, action)

    async def for_user(self, user_id: int) -> list[UserActivityLog]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserActivityLog)
                .where(UserActivityLog.user_id == user_id)
                .order_by(UserActivityLog.timestamp.desc(), UserActivityLog.id.desc())
            )
            return list(result.scalars())

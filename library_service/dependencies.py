from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from library_service.config import settings
from library_service.database import get_db, get_session_factory
from library_service.policies import LoanPolicy
from library_service.services.activity import ActivityLog
from library_service.services.loans import LoanService
from library_service.services.notifications import NotificationDispatcher, NotificationLogStore
from library_service.services.reminders import LoanReminderService
from library_service.services.reservations import ReservationService

_policy = LoanPolicy.from_settings(settings)


def get_policy() -> LoanPolicy:
    return _policy


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_activity_log(session_factory: async_sessionmaker = Depends(get_session_factory)) -> ActivityLog:
    return ActivityLog(session_factory)


def get_notification_logs(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> NotificationLogStore:
    return NotificationLogStore(session_factory)


def get_loan_service(
    db: AsyncSession = Depends(get_db),
    policy: LoanPolicy = Depends(get_policy),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    activity_log: ActivityLog = Depends(get_activity_log),
) -> LoanService:
    return LoanService(db, policy, dispatcher, activity_log)


def get_reservation_service(
    db: AsyncSession = Depends(get_db),
    policy: LoanPolicy = Depends(get_policy),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    activity_log: ActivityLog = Depends(get_activity_log),
) -> ReservationService:
    return ReservationService(db, policy, dispatcher, activity_log)


def get_reminder_service(
    db: AsyncSession = Depends(get_db),
    policy: LoanPolicy = Depends(get_policy),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> LoanReminderService:
    return LoanReminderService(db, policy, dispatcher)

import logging
import math
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from library_service.models.base import utcnow
from library_service.models.catalog import Book
from library_service.models.circulation import Loan
from library_service.models.logs import NotificationType
from library_service.policies import LoanPolicy
from library_service.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


class LoanReminderService:
    """Return reminders and overdue notices for active loans, sent on demand."""

    def __init__(
        self,
        session: AsyncSession,
        policy: LoanPolicy,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session = session
        self._policy = policy
        self._dispatcher = dispatcher
        self._clock = clock

    def _active_loans(self):
        return (
            select(Loan.user_id, Loan.due_date, Book.title)
            .join(Book, Book.id == Loan.book_id)
            .where(Loan.return_date.is_(None))
            .order_by(Loan.due_date, Loan.id)
        )

    async def send_return_reminders(self) -> int:
        now = self._clock()
        result = await self._session.execute(
            self._active_loans().where(Loan.due_date >= now, Loan.due_date <= now + self._policy.reminder_window)
        )
        rows = result.all()
        for row in rows:
            hours_left = math.ceil((row.due_date - now).total_seconds() / 3600)
            message = (
                f"Reminder: '{row.title}' is due in {hours_left}h "
                f"(due at {row.due_date:%Y-%m-%d %H:%M} UTC)."
            )
            await self._dispatcher.notify_user(row.user_id, message, NotificationType.RETURN_REMINDER)

        logger.info("Sent %d return reminders", len(rows))
        return len(rows)

    async def send_overdue_notifications(self) -> int:
        now = self._clock()
        result = await self._session.execute(self._active_loans().where(Loan.due_date < now))
        rows = result.all()
        for row in rows:
            days_late = max(1, (now - row.due_date).days)
            message = f"Overdue: '{row.title}' is {days_late} day(s) late. Please return it as soon as possible."
            await self._dispatcher.notify_user(row.user_id, message, NotificationType.OVERDUE_NOTICE)

        logger.info("Sent %d overdue notices", len(rows))
        return len(rows)

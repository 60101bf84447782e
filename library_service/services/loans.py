import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from library_service.database import transaction
from library_service.errors import Forbidden, NotFound, PolicyViolation
from library_service.models.base import utcnow
from library_service.models.catalog import Book, User
from library_service.models.circulation import Loan
from library_service.policies import LoanPolicy
from library_service.security import Capability, Principal
from library_service.services.activity import ActivityLog, record_history
from library_service.services.notifications import NotificationDispatcher
from library_service.services.reservations import ReservationService
from library_service.services.stock import StockLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoanCreated:
    loan_id: int
    due_date: datetime


@dataclass(frozen=True)
class LoanReturned:
    loan_id: int
    fine: Decimal
    reservation_notified: bool


@dataclass(frozen=True)
class LoanExtended:
    loan_id: int
    due_date: datetime
    extensions: int


class LoanService:
    def __init__(
        self,
        session: AsyncSession,
        policy: LoanPolicy,
        dispatcher: NotificationDispatcher,
        activity_log: ActivityLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session = session
        self._policy = policy
        self._activity_log = activity_log
        self._clock = clock
        self._ledger = StockLedger(session)
        self._reservations = ReservationService(session, policy, dispatcher, activity_log, clock)

    async def _get_for_update(self, loan_id: int) -> Loan:
        result = await self._session.execute(select(Loan).where(Loan.id == loan_id).with_for_update())
        loan = result.scalar_one_or_none()
        if loan is None:
            raise NotFound("Loan not found.")
        return loan

    async def get_loan(self, loan_id: int, caller: Principal) -> Loan:
        loan = await self._session.get(Loan, loan_id)
        if loan is None:
            raise NotFound("Loan not found.")
        if not caller.owns_or_can(loan.user_id, Capability.MANAGE_LOANS):
            raise Forbidden("Loan belongs to another user.")
        return loan

    async def list_loans(self, caller: Principal) -> list[Loan]:
        query = select(Loan).order_by(Loan.id)
        if not caller.can(Capability.MANAGE_LOANS):
            query = query.where(Loan.user_id == caller.user_id)
        result = await self._session.execute(query)
        return list(result.scalars())

    async def create_loan(self, user_id: int, book_id: int, caller: Principal | None = None) -> LoanCreated:
        if caller is not None and not caller.owns_or_can(user_id, Capability.MANAGE_LOANS):
            raise Forbidden("Cannot borrow on behalf of another user.")

        async with transaction(self._session):
            # serialises concurrent borrows of one user while active loans are counted
            user = await self._session.execute(select(User.id).where(User.id == user_id).with_for_update())
            if user.scalar_one_or_none() is None:
                raise NotFound("User not found.")
            if await self._session.get(Book, book_id) is None:
                raise NotFound("Book not found.")

            active_count = await self._session.scalar(
                select(func.count(Loan.id)).where(Loan.user_id == user_id, Loan.return_date.is_(None))
            )
            if active_count >= self._policy.max_active_loans:
                raise PolicyViolation(
                    f"Maximum active loans ({self._policy.max_active_loans}) reached.",
                    error="MaxActiveLoans",
                )

            from_reservation = await self._reservations.consume_ready(user_id, book_id)
            if not from_reservation and not await self._ledger.claim(book_id):
                raise PolicyViolation("Book unavailable.", error="BookUnavailable")

            now = self._clock()
            loan = Loan(
                user_id=user_id,
                book_id=book_id,
                loan_date=now,
                due_date=now + self._policy.loan_duration,
            )
            self._session.add(loan)
            await self._session.flush()
            record_history(self._session, user_id, "Loan", loan_id=loan.id, at=now)

        logger.info("Loan %s created: user_id=%s book_id=%s due=%s", loan.id, user_id, book_id, loan.due_date)
        await self._activity_log.log(user_id, "CreateLoan", f"LoanId={loan.id}, BookId={book_id}")
        return LoanCreated(loan_id=loan.id, due_date=loan.due_date)

    async def return_loan(self, loan_id: int) -> LoanReturned:
        async with transaction(self._session):
            loan = await self._get_for_update(loan_id)
            if loan.return_date is not None:
                raise NotFound("Loan already returned.", error="AlreadyReturned")

            now = self._clock()
            loan.return_date = now
            loan.fine = self._policy.fine_for(loan.due_date, now)
            record_history(self._session, loan.user_id, "Return", loan_id=loan.id, at=now)
            promotion = await self._reservations.release_copy(loan.book_id)

        logger.info("Loan %s returned, fine=%s", loan.id, loan.fine)
        if promotion is not None:
            await self._reservations.notify([promotion])
        await self._activity_log.log(loan.user_id, "ReturnLoan", f"LoanId={loan.id}, Fine={loan.fine}")
        return LoanReturned(loan_id=loan.id, fine=loan.fine, reservation_notified=promotion is not None)

    async def extend_loan(self, loan_id: int, caller: Principal) -> LoanExtended:
        async with transaction(self._session):
            loan = await self._get_for_update(loan_id)
            if not caller.owns_or_can(loan.user_id, Capability.MANAGE_LOANS):
                raise Forbidden("Only the borrower or staff can extend this loan.")
            if loan.return_date is not None:
                raise PolicyViolation("Loan already returned.", error="LoanReturned")
            if loan.extensions_count >= self._policy.max_extensions:
                raise PolicyViolation(
                    f"Maximum extensions ({self._policy.max_extensions}) reached.",
                    error="MaxExtensions",
                )

            loan.due_date = loan.due_date + self._policy.loan_duration
            loan.extensions_count += 1
            record_history(self._session, loan.user_id, "Extend", loan_id=loan.id)

        await self._activity_log.log(
            loan.user_id, "ExtendLoan", f"LoanId={loan.id}, DueDate={loan.due_date.isoformat()}"
        )
        return LoanExtended(loan_id=loan.id, due_date=loan.due_date, extensions=loan.extensions_count)

    async def update_loan(self, loan_id: int, due_date: datetime) -> Loan:
        async with transaction(self._session):
            loan = await self._get_for_update(loan_id)
            loan.due_date = due_date
            record_history(self._session, loan.user_id, "Update", loan_id=loan.id)

        await self._activity_log.log(
            loan.user_id, "UpdateLoan", f"LoanId={loan.id}, DueDate={due_date.isoformat()}"
        )
        return loan

    async def delete_loan(self, loan_id: int) -> None:
        promotion = None
        async with transaction(self._session):
            loan = await self._get_for_update(loan_id)
            user_id, book_id, was_active = loan.user_id, loan.book_id, loan.is_active
            await self._session.execute(delete(Loan).where(Loan.id == loan_id))
            record_history(self._session, user_id, "Delete", loan_id=loan_id)
            if was_active:
                promotion = await self._reservations.release_copy(book_id)

        if promotion is not None:
            await self._reservations.notify([promotion])
        await self._activity_log.log(user_id, "DeleteLoan", f"LoanId={loan_id}")

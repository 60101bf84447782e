"""Reservation lifecycle: pending -> ready -> completed, or ready -> expired.

A ready reservation holds one copy: promotion takes it out of stock and
expiry, cancellation or the loan conversion settle it again.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from library_service.database import transaction
from library_service.errors import Conflict, Forbidden, NotFound, PolicyViolation
from library_service.models.base import utcnow
from library_service.models.catalog import Book, User
from library_service.models.circulation import ACTIVE_RESERVATION_STATUSES, Reservation, ReservationStatus
from library_service.models.logs import NotificationType
from library_service.policies import LoanPolicy
from library_service.security import Capability, Principal
from library_service.services.activity import ActivityLog, record_history
from library_service.services.notifications import NotificationDispatcher
from library_service.services.stock import StockLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Promotion:
    reservation_id: int
    user_id: int
    book_id: int
    book_title: str

    @property
    def message(self) -> str:
        return f"The book '{self.book_title}' is now available."


class ReservationService:
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
        self._dispatcher = dispatcher
        self._activity_log = activity_log
        self._clock = clock
        self._ledger = StockLedger(session)

    def expiration_date(self, reservation: Reservation) -> datetime | None:
        if reservation.available_at is None:
            return None
        return reservation.available_at + self._policy.reservation_expiry

    # queries

    async def get_reservation(self, reservation_id: int, caller: Principal) -> Reservation:
        reservation = await self._session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound("Reservation not found.")
        if not caller.owns_or_can(reservation.user_id, Capability.MANAGE_RESERVATIONS):
            raise Forbidden("Reservation belongs to another user.")
        return reservation

    async def list_all(self) -> list[Reservation]:
        result = await self._session.execute(select(Reservation).order_by(Reservation.id))
        return list(result.scalars())

    async def list_for_user(self, user_id: int, caller: Principal) -> list[Reservation]:
        if not caller.owns_or_can(user_id, Capability.MANAGE_RESERVATIONS):
            raise Forbidden("Cannot list another user's reservations.")
        result = await self._session.execute(
            select(Reservation)
            .where(Reservation.user_id == user_id, Reservation.status.in_(ACTIVE_RESERVATION_STATUSES))
            .order_by(Reservation.created_at, Reservation.id)
        )
        return list(result.scalars())

    async def pending_for_book(self, book_id: int) -> list[Reservation]:
        result = await self._session.execute(
            select(Reservation)
            .where(Reservation.book_id == book_id, Reservation.status == ReservationStatus.PENDING)
            .order_by(Reservation.created_at, Reservation.id)
        )
        return list(result.scalars())

    # lifecycle

    async def create_reservation(self, user_id: int, book_id: int, caller: Principal) -> Reservation:
        if user_id != caller.user_id:
            raise Forbidden("User mismatch.")

        if await self._session.get(User, user_id) is None:
            raise NotFound("User not found.")
        if await self._session.get(Book, book_id) is None:
            raise NotFound("Book not found.")

        existing = await self._session.execute(
            select(Reservation.id)
            .where(
                Reservation.user_id == user_id,
                Reservation.book_id == book_id,
                Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            )
            .limit(1)
        )
        if existing.first() is not None:
            raise Conflict("Existing active reservation for this book.", error="ReservationExists")

        now = self._clock()
        reservation = Reservation(
            user_id=user_id,
            book_id=book_id,
            reservation_date=now,
            status=ReservationStatus.PENDING,
            created_at=now,
        )
        try:
            async with transaction(self._session):
                stock = await self._ledger.lock(book_id)
                if stock is not None and stock.quantity > 0:
                    raise PolicyViolation(
                        "Copies available. Please borrow instead of reserving.", error="CopiesAvailable"
                    )
                self._session.add(reservation)
                await self._session.flush()
                record_history(self._session, user_id, "Reservation", reservation_id=reservation.id, at=now)
                # a copy returned since the check belongs to the queue
                promotion = await self.promote_next(book_id)
        except IntegrityError as exc:
            raise Conflict("Existing active reservation for this book.", error="ReservationExists") from exc

        logger.info("Reservation %s created: user_id=%s book_id=%s", reservation.id, user_id, book_id)
        if promotion is not None:
            await self._session.refresh(reservation)
            await self.notify([promotion])
        await self._activity_log.log(user_id, "CreateReservation", f"ReservationId={reservation.id}")
        return reservation

    async def update_reservation(
        self,
        reservation_id: int,
        *,
        user_id: int,
        book_id: int,
        reservation_date: datetime,
        status: ReservationStatus,
    ) -> Reservation:
        """Staff edit. Moving into or out of READY takes or gives back the held copy."""
        promotions = []
        try:
            async with transaction(self._session):
                reservation = await self._session.get(Reservation, reservation_id)
                if reservation is None:
                    raise NotFound("Reservation not found.")

                was_ready = reservation.status == ReservationStatus.READY
                is_ready = status == ReservationStatus.READY
                keeps_hold = was_ready and is_ready and reservation.book_id == book_id

                # release before editing so the row is not its own successor
                if was_ready and not keeps_hold:
                    promotion = await self.release_copy(reservation.book_id)
                    if promotion is not None:
                        promotions.append(promotion)

                if is_ready and not keeps_hold:
                    if not await self._ledger.claim(book_id):
                        raise PolicyViolation("No copy left to hold for this reservation.", error="BookUnavailable")
                    now = self._clock()
                    reservation.available_at = now
                    record_history(
                        self._session, user_id, "ReservationAvailable", reservation_id=reservation_id, at=now
                    )
                    promotions.append(await self._promotion(reservation_id, user_id, book_id))
                elif status == ReservationStatus.PENDING:
                    reservation.available_at = None

                reservation.user_id = user_id
                reservation.book_id = book_id
                reservation.reservation_date = reservation_date
                reservation.status = status
        except IntegrityError as exc:
            raise Conflict("Existing active reservation for this book.", error="ReservationExists") from exc

        await self.notify(promotions)
        await self._activity_log.log(
            user_id, "UpdateReservation", f"ReservationId={reservation_id}, Status={status.value}"
        )
        return reservation

    async def delete_reservation(self, reservation_id: int, caller: Principal) -> None:
        promotions = []
        async with transaction(self._session):
            reservation = await self._session.get(Reservation, reservation_id)
            if reservation is None:
                raise NotFound("Reservation not found.")
            if not caller.owns_or_can(reservation.user_id, Capability.MANAGE_RESERVATIONS):
                raise Forbidden("Reservation belongs to another user.")

            held_copy = reservation.status == ReservationStatus.READY
            user_id, book_id = reservation.user_id, reservation.book_id
            await self._session.execute(delete(Reservation).where(Reservation.id == reservation_id))
            record_history(self._session, user_id, "ReservationCancelled", reservation_id=reservation_id)
            if held_copy:
                promotion = await self.release_copy(book_id)
                if promotion is not None:
                    promotions.append(promotion)

        await self.notify(promotions)
        await self._activity_log.log(user_id, "DeleteReservation", f"ReservationId={reservation_id}")

    async def cleanup_expired(self) -> int:
        """Remove ready reservations whose pickup window lapsed and put their copies back."""
        threshold = self._clock() - self._policy.reservation_expiry
        is_expired = (
            Reservation.status == ReservationStatus.READY,
            Reservation.available_at.is_not(None),
            Reservation.available_at <= threshold,
        )

        removed = []
        promotions = []
        async with transaction(self._session):
            candidates = await self._session.execute(
                select(Reservation.id, Reservation.user_id, Reservation.book_id)
                .where(*is_expired)
                .order_by(Reservation.available_at, Reservation.id)
            )
            for row in candidates.all():
                # claim-then-delete: a reservation converted to a loan meanwhile is left alone
                deleted = await self._session.execute(
                    delete(Reservation)
                    .where(Reservation.id == row.id, *is_expired)
                    .execution_options(synchronize_session=False)
                )
                if deleted.rowcount != 1:
                    continue
                removed.append(row)
                record_history(self._session, row.user_id, "ReservationExpired", reservation_id=row.id)
                promotion = await self.release_copy(row.book_id)
                if promotion is not None:
                    promotions.append(promotion)

        if removed:
            logger.info("%d expired reservations removed", len(removed))
        await self.notify(promotions)
        for row in removed:
            await self._activity_log.log(row.user_id, "ReservationExpired", f"ReservationId={row.id}")
        return len(removed)

    # copy hand-off, run inside the caller's transaction

    async def promote_next(self, book_id: int) -> Promotion | None:
        """Hold one copy for the oldest pending reservation of ``book_id``."""
        while True:
            result = await self._session.execute(
                select(Reservation.id, Reservation.user_id)
                .where(Reservation.book_id == book_id, Reservation.status == ReservationStatus.PENDING)
                .order_by(Reservation.created_at, Reservation.id)
                .limit(1)
            )
            candidate = result.first()
            if candidate is None:
                return None
            if not await self._ledger.claim(book_id):
                return None

            now = self._clock()
            promoted = await self._session.execute(
                update(Reservation)
                .where(Reservation.id == candidate.id, Reservation.status == ReservationStatus.PENDING)
                .values(status=ReservationStatus.READY, available_at=now)
                .execution_options(synchronize_session=False)
            )
            if promoted.rowcount == 1:
                break
            # the reservation went away between select and update
            await self._ledger.release(book_id)

        record_history(self._session, candidate.user_id, "ReservationAvailable", reservation_id=candidate.id, at=now)
        logger.info("Reservation %s ready for user_id=%s", candidate.id, candidate.user_id)
        return await self._promotion(candidate.id, candidate.user_id, book_id)

    async def _promotion(self, reservation_id: int, user_id: int, book_id: int) -> Promotion:
        title = await self._session.scalar(select(Book.title).where(Book.id == book_id))
        return Promotion(reservation_id=reservation_id, user_id=user_id, book_id=book_id, book_title=title or "")

    async def release_copy(self, book_id: int) -> Promotion | None:
        """Return one copy to stock and offer it to the next pending reservation."""
        await self._ledger.release(book_id)
        return await self.promote_next(book_id)

    async def promote_waiting(self, book_id: int) -> list[Promotion]:
        """Promote pending reservations while copies of ``book_id`` remain in stock."""
        promotions = []
        while (promotion := await self.promote_next(book_id)) is not None:
            promotions.append(promotion)
        return promotions

    async def consume_ready(self, user_id: int, book_id: int) -> bool:
        """Turn the user's ready reservation into a loan pickup. True when a held copy was used."""
        result = await self._session.execute(
            select(Reservation.id).where(
                Reservation.user_id == user_id,
                Reservation.book_id == book_id,
                Reservation.status == ReservationStatus.READY,
            )
        )
        reservation_id = result.scalar_one_or_none()
        if reservation_id is None:
            return False
        consumed = await self._session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.status == ReservationStatus.READY)
            .values(status=ReservationStatus.COMPLETED)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            return False
        record_history(self._session, user_id, "ReservationCompleted", reservation_id=reservation_id)
        return True

    async def notify(self, promotions) -> None:
        """Tell each promoted holder their copy is waiting. Runs after commit."""
        for promotion in promotions:
            await self._dispatcher.notify_user(
                promotion.user_id, promotion.message, NotificationType.RESERVATION_AVAILABLE
            )

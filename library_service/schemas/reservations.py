from datetime import datetime

from pydantic import Field

from library_service.models.circulation import Reservation, ReservationStatus
from library_service.schemas.common import CamelModel


class ReservationCreate(CamelModel):
    user_id: int = Field(gt=0)
    book_id: int = Field(gt=0)


class ReservationUpdate(CamelModel):
    reservation_id: int = Field(gt=0)
    user_id: int = Field(gt=0)
    book_id: int = Field(gt=0)
    reservation_date: datetime
    status: ReservationStatus


class ReservationRead(CamelModel):
    reservation_id: int
    user_id: int
    book_id: int
    reservation_date: datetime
    status: ReservationStatus
    available_at: datetime | None
    expiration_date: datetime | None

    @classmethod
    def from_model(cls, reservation: Reservation, expiration_date: datetime | None) -> "ReservationRead":
        return cls(
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            book_id=reservation.book_id,
            reservation_date=reservation.reservation_date,
            status=reservation.status,
            available_at=reservation.available_at,
            expiration_date=expiration_date,
        )

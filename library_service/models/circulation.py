import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from library_service.models.base import Base, UTCDateTime, utcnow
from library_service.models.catalog import Book, User


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    READY = "READY"
    COMPLETED = "COMPLETED"


ACTIVE_RESERVATION_STATUSES = (ReservationStatus.PENDING, ReservationStatus.READY)


class Loan(Base):
    __tablename__ = "loans"
    __table_args__ = (
        Index("ix_loans_user_active", "user_id", "return_date"),
        Index("ix_loans_due_date", "due_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id", ondelete="RESTRICT"), nullable=False)
    loan_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    return_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    fine: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    extensions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    user: Mapped[User] = relationship(lazy="raise")
    book: Mapped[Book] = relationship(lazy="raise")

    @property
    def is_active(self) -> bool:
        return self.return_date is None

    def __repr__(self) -> str:
        status = "returned" if self.return_date else "active"
        return f"<Loan {self.id} - {status}>"


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        # at most one pending/ready reservation per (user, book)
        Index(
            "uq_reservations_active_user_book",
            "user_id",
            "book_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'READY')"),
            sqlite_where=text("status IN ('PENDING', 'READY')"),
        ),
        Index("ix_reservations_book_status", "book_id", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    reservation_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus, native_enum=False, length=20),
        nullable=False,
        default=ReservationStatus.PENDING,
    )
    available_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    user: Mapped[User] = relationship(lazy="raise")
    book: Mapped[Book] = relationship(lazy="raise")


class History(Base):
    """Append-only user event. Loan and reservation ids are kept as plain values."""

    __tablename__ = "histories"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    loan_id: Mapped[int | None] = mapped_column(Integer)
    reservation_id: Mapped[int | None] = mapped_column(Integer)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

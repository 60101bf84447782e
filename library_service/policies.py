from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from library_service.config import Settings


@dataclass(frozen=True)
class LoanPolicy:
    """Circulation rules. Built once from configuration and never mutated."""

    max_active_loans: int = 5
    max_extensions: int = 2
    loan_duration_days: int = 14
    late_fee_per_day: Decimal = Decimal("0.50")
    reservation_expiry_hours: int = 48
    reminder_window_hours: int = 24

    @classmethod
    def from_settings(cls, settings: Settings) -> "LoanPolicy":
        return cls(
            max_active_loans=settings.max_active_loans,
            max_extensions=settings.max_extensions,
            loan_duration_days=settings.loan_duration_days,
            late_fee_per_day=settings.late_fee_per_day,
            reservation_expiry_hours=settings.reservation_expiry_hours,
            reminder_window_hours=settings.reminder_window_hours,
        )

    @property
    def loan_duration(self) -> timedelta:
        return timedelta(days=self.loan_duration_days)

    @property
    def reservation_expiry(self) -> timedelta:
        return timedelta(hours=self.reservation_expiry_hours)

    @property
    def reminder_window(self) -> timedelta:
        return timedelta(hours=self.reminder_window_hours)

    def days_late(self, due_date: datetime, returned_at: datetime) -> int:
        return max(0, (returned_at.date() - due_date.date()).days)

    def fine_for(self, due_date: datetime, returned_at: datetime) -> Decimal:
        return (self.days_late(due_date, returned_at) * self.late_fee_per_day).quantize(Decimal("0.01"))

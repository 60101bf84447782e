from datetime import datetime

from pydantic import Field

from library_service.schemas.common import CamelModel


class LoanCreate(CamelModel):
    user_id: int = Field(gt=0)
    book_id: int = Field(gt=0)


class LoanUpdate(CamelModel):
    due_date: datetime


class LoanRead(CamelModel):
    id: int
    user_id: int
    book_id: int
    loan_date: datetime
    due_date: datetime
    return_date: datetime | None
    fine: float
    extensions_count: int


class LoanCreatedResponse(CamelModel):
    message: str = "Loan created successfully."
    due_date: datetime


class LoanReturnedResponse(CamelModel):
    message: str = "Book returned successfully."
    reservation_notified: bool
    fine: float


class LoanExtendedResponse(CamelModel):
    due_date: datetime
    extensions: int


class RemindersResponse(CamelModel):
    reminders: int
    overdue_notices: int

from fastapi import APIRouter, Depends

from library_service.dependencies import get_loan_service, get_reminder_service
from library_service.errors import NotFound, PolicyViolation
from library_service.middleware.auth import get_current_user, require_capability
from library_service.schemas.common import ERROR_RESPONSES, MessageResponse
from library_service.schemas.loans import (
    LoanCreate,
    LoanCreatedResponse,
    LoanExtendedResponse,
    LoanRead,
    LoanReturnedResponse,
    LoanUpdate,
    RemindersResponse,
)
from library_service.security import Capability, Principal
from library_service.services.loans import LoanService
from library_service.services.reminders import LoanReminderService

router = APIRouter(prefix="/loans", tags=["loans"], responses=ERROR_RESPONSES)


@router.post("", response_model=LoanCreatedResponse)
async def create_loan(
    request: LoanCreate,
    user: Principal = Depends(require_capability(Capability.BORROW)),
    loans: LoanService = Depends(get_loan_service),
):
    created = await loans.create_loan(request.user_id, request.book_id, caller=user)
    return LoanCreatedResponse(due_date=created.due_date)


@router.get("", response_model=list[LoanRead])
async def list_loans(
    user: Principal = Depends(get_current_user),
    loans: LoanService = Depends(get_loan_service),
):
    return await loans.list_loans(user)


@router.post("/reminders", response_model=RemindersResponse)
async def send_reminders(
    _: Principal = Depends(require_capability(Capability.MANAGE_LOANS)),
    reminders: LoanReminderService = Depends(get_reminder_service),
):
    """Return reminders for loans due soon, then overdue notices."""
    sent = await reminders.send_return_reminders()
    overdue = await reminders.send_overdue_notifications()
    return RemindersResponse(reminders=sent, overdue_notices=overdue)


@router.get("/{loan_id}", response_model=LoanRead)
async def get_loan(
    loan_id: int,
    user: Principal = Depends(get_current_user),
    loans: LoanService = Depends(get_loan_service),
):
    return await loans.get_loan(loan_id, user)


@router.put("/{loan_id}/return", response_model=LoanReturnedResponse)
async def return_loan(
    loan_id: int,
    _: Principal = Depends(require_capability(Capability.MANAGE_LOANS)),
    loans: LoanService = Depends(get_loan_service),
):
    try:
        returned = await loans.return_loan(loan_id)
    except NotFound as exc:
        # unknown and already-returned loans are both a bad request here
        raise PolicyViolation(exc.details, error=exc.error) from exc
    return LoanReturnedResponse(reservation_notified=returned.reservation_notified, fine=returned.fine)


@router.post("/{loan_id}/extend", response_model=LoanExtendedResponse)
async def extend_loan(
    loan_id: int,
    user: Principal = Depends(get_current_user),
    loans: LoanService = Depends(get_loan_service),
):
    extended = await loans.extend_loan(loan_id, user)
    return LoanExtendedResponse(due_date=extended.due_date, extensions=extended.extensions)


@router.put("/{loan_id}", response_model=LoanRead)
async def update_loan(
    loan_id: int,
    request: LoanUpdate,
    _: Principal = Depends(require_capability(Capability.MANAGE_LOANS)),
    loans: LoanService = Depends(get_loan_service),
):
    return await loans.update_loan(loan_id, request.due_date)


@router.delete("/{loan_id}", response_model=MessageResponse)
async def delete_loan(
    loan_id: int,
    _: Principal = Depends(require_capability(Capability.MANAGE_LOANS)),
    loans: LoanService = Depends(get_loan_service),
):
    await loans.delete_loan(loan_id)
    return MessageResponse(message="Loan deleted successfully.")

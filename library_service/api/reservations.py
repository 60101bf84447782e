from fastapi import APIRouter, Depends, Response, status

from library_service.dependencies import get_reservation_service
from library_service.errors import PolicyViolation
from library_service.middleware.auth import get_current_user, require_capability
from library_service.schemas.common import ERROR_RESPONSES, MessageResponse
from library_service.schemas.reservations import ReservationCreate, ReservationRead, ReservationUpdate
from library_service.security import Capability, Principal
from library_service.services.reservations import ReservationService

router = APIRouter(prefix="/reservations", tags=["reservations"], responses=ERROR_RESPONSES)


def _read_all(reservations: ReservationService, items) -> list[ReservationRead]:
    return [ReservationRead.from_model(r, reservations.expiration_date(r)) for r in items]


@router.get("", response_model=list[ReservationRead])
async def list_reservations(
    _: Principal = Depends(require_capability(Capability.MANAGE_RESERVATIONS)),
    reservations: ReservationService = Depends(get_reservation_service),
):
    return _read_all(reservations, await reservations.list_all())


@router.get("/user/{user_id}", response_model=list[ReservationRead])
async def list_user_reservations(
    user_id: int,
    user: Principal = Depends(get_current_user),
    reservations: ReservationService = Depends(get_reservation_service),
):
    return _read_all(reservations, await reservations.list_for_user(user_id, user))


@router.get("/book/{book_id}/pending", response_model=list[ReservationRead])
async def list_pending_for_book(
    book_id: int,
    _: Principal = Depends(require_capability(Capability.MANAGE_RESERVATIONS)),
    reservations: ReservationService = Depends(get_reservation_service),
):
    return _read_all(reservations, await reservations.pending_for_book(book_id))


@router.post("/cleanup-expired", response_model=MessageResponse)
async def cleanup_expired_reservations(
    _: Principal = Depends(require_capability(Capability.MANAGE_RESERVATIONS)),
    reservations: ReservationService = Depends(get_reservation_service),
):
    """Removes expired reservations, restores stock, and logs the removals."""
    count = await reservations.cleanup_expired()
    return MessageResponse(message=f"{count} expired reservations removed.")


@router.get("/{reservation_id}", response_model=ReservationRead)
async def get_reservation(
    reservation_id: int,
    user: Principal = Depends(get_current_user),
    reservations: ReservationService = Depends(get_reservation_service),
):
    reservation = await reservations.get_reservation(reservation_id, user)
    return ReservationRead.from_model(reservation, reservations.expiration_date(reservation))


@router.post("", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    request: ReservationCreate,
    response: Response,
    user: Principal = Depends(require_capability(Capability.RESERVE)),
    reservations: ReservationService = Depends(get_reservation_service),
):
    reservation = await reservations.create_reservation(request.user_id, request.book_id, user)
    response.headers["Location"] = f"/reservations/{reservation.id}"
    return ReservationRead.from_model(reservation, reservations.expiration_date(reservation))


@router.put("/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def update_reservation(
    reservation_id: int,
    request: ReservationUpdate,
    _: Principal = Depends(require_capability(Capability.MANAGE_RESERVATIONS)),
    reservations: ReservationService = Depends(get_reservation_service),
):
    if request.reservation_id != reservation_id:
        raise PolicyViolation("Reservation id in path and body differ.", error="IdMismatch")
    await reservations.update_reservation(
        reservation_id,
        user_id=request.user_id,
        book_id=request.book_id,
        reservation_date=request.reservation_date,
        status=request.status,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_reservation(
    reservation_id: int,
    user: Principal = Depends(get_current_user),
    reservations: ReservationService = Depends(get_reservation_service),
):
    await reservations.delete_reservation(reservation_id, user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

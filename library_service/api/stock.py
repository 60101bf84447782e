from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from library_service.database import get_db
from library_service.dependencies import get_reservation_service
from library_service.middleware.auth import require_capability
from library_service.models.catalog import Stock
from library_service.schemas.common import ERROR_RESPONSES
from library_service.schemas.stock import StockAdjustRequest, StockAdjustResponse, StockResponse
from library_service.security import Capability, Principal
from library_service.services.inventory import adjust_stock
from library_service.services.reservations import ReservationService

router = APIRouter(prefix="/stocks", tags=["stock"], responses=ERROR_RESPONSES)


@router.get("/{book_id}", response_model=StockResponse)
async def get_stock(book_id: int, db: AsyncSession = Depends(get_db)):
    """Public endpoint, no authentication required."""
    result = await db.execute(select(Stock).where(Stock.book_id == book_id))
    stock = result.scalar_one_or_none()
    if stock is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Book not found in inventory")
    return StockResponse(
        book_id=stock.book_id,
        quantity=stock.quantity,
        is_available=stock.is_available,
        updated_at=stock.updated_at,
    )


@router.patch("/{book_id}/adjust", response_model=StockAdjustResponse)
async def adjust(
    book_id: int,
    request: StockAdjustRequest,
    _: Principal = Depends(require_capability(Capability.MANAGE_STOCK)),
    db: AsyncSession = Depends(get_db),
    reservations: ReservationService = Depends(get_reservation_service),
):
    """Add or remove copies. Added copies are offered to waiting reservations first."""
    adjustment = await adjust_stock(db, book_id, request.delta, reservations)
    return StockAdjustResponse(
        book_id=book_id,
        previous_quantity=adjustment.previous_quantity,
        quantity=adjustment.new_quantity,
        is_available=adjustment.new_quantity > 0,
        reservations_promoted=len(adjustment.promotions),
    )

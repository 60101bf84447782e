import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from library_service.database import transaction
from library_service.errors import NotFound
from library_service.services.reservations import Promotion, ReservationService
from library_service.services.stock import StockLedger, adjust_quantity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockAdjustment:
    book_id: int
    previous_quantity: int
    new_quantity: int
    promotions: tuple[Promotion, ...] = ()


async def adjust_stock(
    session: AsyncSession, book_id: int, delta: int, reservations: ReservationService
) -> StockAdjustment:
    """Row-locked stock adjustment. New copies go to waiting reservations first."""
    ledger = StockLedger(session)
    async with transaction(session):
        stock = await ledger.lock(book_id)
        if stock is None:
            raise NotFound("Book not found in inventory")
        previous = stock.quantity
        adjust_quantity(stock, delta)
        await session.flush()

        promotions = await reservations.promote_waiting(book_id) if delta > 0 else []
        new_quantity = await ledger.quantity(book_id)

    logger.info(
        "Stock adjusted for book_id=%s: %d -> %d (%d reservations promoted)",
        book_id, previous, new_quantity, len(promotions),
    )
    await reservations.notify(promotions)
    return StockAdjustment(
        book_id=book_id,
        previous_quantity=previous,
        new_quantity=new_quantity,
        promotions=tuple(promotions),
    )

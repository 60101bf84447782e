"""Stock ledger: per-book copy counts and the derived availability flag.

The module-level helpers mutate a loaded ``Stock`` row in memory and are meant
for row-locked read-modify-write paths. ``StockLedger`` issues single atomic
``UPDATE`` statements for the hot loan/reservation paths, so two requests
racing for the last copy can never both win.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from library_service.errors import InternalError
from library_service.models.catalog import Stock

logger = logging.getLogger(__name__)


def update_availability(stock: Stock) -> None:
    stock.is_available = stock.quantity > 0


def adjust_quantity(stock: Stock, delta: int) -> None:
    """Apply ``delta`` and clamp at zero. Callers pre-validate when clamping is unwanted."""
    stock.quantity = max(0, stock.quantity + delta)
    update_availability(stock)


def increase(stock: Stock) -> None:
    adjust_quantity(stock, +1)


def decrease(stock: Stock) -> None:
    adjust_quantity(stock, -1)


class StockLedger:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def lock(self, book_id: int) -> Stock | None:
        result = await self._session.execute(
            select(Stock)
            .where(Stock.book_id == book_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def quantity(self, book_id: int) -> int | None:
        result = await self._session.execute(select(Stock.quantity).where(Stock.book_id == book_id))
        return result.scalar_one_or_none()

    async def claim(self, book_id: int) -> bool:
        """Take one copy out of stock. Returns False when none is left."""
        result = await self._session.execute(
            update(Stock)
            .where(Stock.book_id == book_id, Stock.quantity > 0)
            .values(quantity=Stock.quantity - 1, is_available=Stock.quantity > 1)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if not claimed:
            logger.info("No copy left to claim for book_id=%s", book_id)
        return claimed

    async def release(self, book_id: int) -> None:
        result = await self._session.execute(
            update(Stock)
            .where(Stock.book_id == book_id)
            .values(quantity=Stock.quantity + 1, is_available=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error("Stock record not found for book_id=%s, copy not released", book_id)
            raise InternalError(f"Stock record missing for book {book_id}.")


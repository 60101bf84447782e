from datetime import datetime

from library_service.schemas.common import CamelModel


class StockResponse(CamelModel):
    book_id: int
    quantity: int
    is_available: bool
    updated_at: datetime | None


class StockAdjustRequest(CamelModel):
    delta: int


class StockAdjustResponse(CamelModel):
    book_id: int
    previous_quantity: int
    quantity: int
    is_available: bool
    reservations_promoted: int

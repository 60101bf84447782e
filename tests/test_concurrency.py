import asyncio

from library_service.errors import PolicyViolation
from library_service.models.circulation import ReservationStatus
from library_service.models.logs import NotificationType
from library_service.security import Principal
from library_service.services.stock import StockLedger


async def test_concurrent_loans_for_last_copy(loans, library):
    """Only one of several simultaneous borrowers gets the last copy."""
    users = [await library.add_user() for _ in range(5)]
    book_id = await library.add_book(quantity=1)

    results = await asyncio.gather(
        *(loans.create_loan(user_id, book_id) for user_id in users),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == len(users) - 1
    assert all(isinstance(f, PolicyViolation) and f.error == "BookUnavailable" for f in failures)
    stock = await library.stock(book_id)
    assert (stock.quantity, stock.is_available) == (0, False)


async def test_concurrent_cleanup_expires_each_reservation_once(loans, reservations, library, clock):
    borrower = await library.add_user()
    holder = await library.add_user()
    book_id = await library.add_book(quantity=1)
    loan = await loans.create_loan(borrower, book_id)
    await reservations.create_reservation(holder, book_id, Principal.from_roles(holder, ["User"]))
    await loans.return_loan(loan.loan_id)
    clock.advance(hours=49)

    counts = await asyncio.gather(*(reservations.cleanup_expired() for _ in range(3)))

    assert sum(counts) == 1
    stock = await library.stock(book_id)
    assert (stock.quantity, stock.is_available) == (1, True)


async def test_copy_returned_while_reserving_goes_to_the_new_reservation(
    loans, reservations, library, dispatcher, monkeypatch
):
    """A return that lands between the availability check and the insert still reaches the queue."""
    borrower = await library.add_user()
    holder = await library.add_user()
    book_id = await library.add_book(title="Dune", quantity=1)
    loan = await loans.create_loan(borrower, book_id)

    lock = StockLedger.lock

    async def lock_then_return(self, locked_book_id):
        stock = await lock(self, locked_book_id)
        monkeypatch.setattr(StockLedger, "lock", lock)
        await loans.return_loan(loan.loan_id)
        return stock

    monkeypatch.setattr(StockLedger, "lock", lock_then_return)

    reservation = await reservations.create_reservation(holder, book_id, Principal.from_roles(holder, ["User"]))

    assert reservation.status == ReservationStatus.READY
    stored = await library.reservation(reservation.id)
    assert stored.status == ReservationStatus.READY
    assert stored.available_at is not None
    stock = await library.stock(book_id)
    assert (stock.quantity, stock.is_available) == (0, False)
    assert dispatcher.sent == [(holder, "The book 'Dune' is now available.", NotificationType.RESERVATION_AVAILABLE)]

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import START
from library_service.errors import Forbidden, NotFound, PolicyViolation
from library_service.models.circulation import ReservationStatus
from library_service.models.logs import NotificationType
from library_service.security import Principal
from library_service.services.loans import LoanService
from library_service.services.notifications import KafkaNotificationDispatcher, NotificationLogStore

LIBRARIAN = Principal.from_roles(1000, ["Librarian"])


def member(user_id):
    return Principal.from_roles(user_id, ["User"])


async def test_create_loan_claims_a_copy(loans, library):
    user_id = await library.add_user()
    book_id = await library.add_book(quantity=1)

    created = await loans.create_loan(user_id, book_id, caller=member(user_id))

    assert created.due_date == START + timedelta(days=14)
    loan = await library.loan(created.loan_id)
    assert loan.loan_date == START
    assert loan.return_date is None
    assert loan.extensions_count == 0
    stock = await library.stock(book_id)
    assert (stock.quantity, stock.is_available) == (0, False)
    assert await library.history(user_id) == ["Loan"]


async def test_create_loan_without_copies_is_rejected(loans, library):
    user_id = await library.add_user()
    book_id = await library.add_book(quantity=0)

    with pytest.raises(PolicyViolation) as exc_info:
        await loans.create_loan(user_id, book_id)

    assert exc_info.value.error == "BookUnavailable"
    assert (await library.stock(book_id)).quantity == 0
    assert await library.history(user_id) == []


async def test_active_loan_limit(loans, library):
    user_id = await library.add_user()
    books = [await library.add_book(title=f"Book {i}", quantity=1) for i in range(3)]

    await loans.create_loan(user_id, books[0])
    await loans.create_loan(user_id, books[1])
    with pytest.raises(PolicyViolation) as exc_info:
        await loans.create_loan(user_id, books[2])

    assert exc_info.value.error == "MaxActiveLoans"
    assert (await library.stock(books[2])).quantity == 1


async def test_returned_loans_do_not_count_towards_limit(loans, library):
    user_id = await library.add_user()
    books = [await library.add_book(title=f"Book {i}", quantity=1) for i in range(3)]

    first = await loans.create_loan(user_id, books[0])
    await loans.create_loan(user_id, books[1])
    await loans.return_loan(first.loan_id)

    assert (await loans.create_loan(user_id, books[2])).loan_id


async def test_create_loan_unknown_user_or_book(loans, library):
    user_id = await library.add_user()
    book_id = await library.add_book()

    with pytest.raises(NotFound):
        await loans.create_loan(999, book_id)
    with pytest.raises(NotFound):
        await loans.create_loan(user_id, 999)


async def test_members_cannot_borrow_for_someone_else(loans, library):
    user_id = await library.add_user()
    other_id = await library.add_user()
    book_id = await library.add_book()

    with pytest.raises(Forbidden):
        await loans.create_loan(other_id, book_id, caller=member(user_id))

    created = await loans.create_loan(other_id, book_id, caller=LIBRARIAN)
    assert (await library.loan(created.loan_id)).user_id == other_id


async def test_return_on_time_has_no_fine(loans, library, dispatcher):
    user_id = await library.add_user()
    book_id = await library.add_book(quantity=1)
    created = await loans.create_loan(user_id, book_id)

    returned = await loans.return_loan(created.loan_id)

    assert returned.fine == Decimal("0.00")
    assert returned.reservation_notified is False
    assert dispatcher.sent == []
    stock = await library.stock(book_id)
    assert (stock.quantity, stock.is_available) == (1, True)
    assert await library.history(user_id) == ["Loan", "Return"]


async def test_late_return_is_fined_per_calendar_day(loans, library, clock):
    user_id = await library.add_user()
    book_id = await library.add_book()
    created = await loans.create_loan(user_id, book_id)

    clock.advance(days=17)
    returned = await loans.return_loan(created.loan_id)

    assert returned.fine == Decimal("1.50")
    loan = await library.loan(created.loan_id)
    assert loan.return_date == clock.now
    assert loan.fine == Decimal("1.50")


async def test_return_twice_fails(loans, library):
    user_id = await library.add_user()
    book_id = await library.add_book()
    created = await loans.create_loan(user_id, book_id)
    await loans.return_loan(created.loan_id)

    with pytest.raises(NotFound) as exc_info:
        await loans.return_loan(created.loan_id)

    assert exc_info.value.error == "AlreadyReturned"
    assert (await library.stock(book_id)).quantity == 1


async def test_return_unknown_loan(loans):
    with pytest.raises(NotFound):
        await loans.return_loan(999)


async def test_extensions_are_bounded(loans, library, policy):
    user_id = await library.add_user()
    book_id = await library.add_book()
    created = await loans.create_loan(user_id, book_id)

    for expected in range(1, policy.max_extensions + 1):
        extended = await loans.extend_loan(created.loan_id, member(user_id))
        assert extended.extensions == expected

    with pytest.raises(PolicyViolation) as exc_info:
        await loans.extend_loan(created.loan_id, member(user_id))

    assert exc_info.value.error == "MaxExtensions"
    loan = await library.loan(created.loan_id)
    assert loan.extensions_count == policy.max_extensions
    assert loan.due_date == created.due_date + policy.max_extensions * policy.loan_duration


async def test_only_owner_or_staff_can_extend(loans, library):
    user_id = await library.add_user()
    other_id = await library.add_user()
    book_id = await library.add_book()
    created = await loans.create_loan(user_id, book_id)

    with pytest.raises(Forbidden):
        await loans.extend_loan(created.loan_id, member(other_id))

    extended = await loans.extend_loan(created.loan_id, LIBRARIAN)
    assert extended.extensions == 1


async def test_returned_loan_cannot_be_extended(loans, library):
    user_id = await library.add_user()
    book_id = await library.add_book()
    created = await loans.create_loan(user_id, book_id)
    await loans.return_loan(created.loan_id)

    with pytest.raises(PolicyViolation) as exc_info:
        await loans.extend_loan(created.loan_id, member(user_id))

    assert exc_info.value.error == "LoanReturned"


async def test_extend_unknown_loan(loans):
    with pytest.raises(NotFound):
        await loans.extend_loan(999, LIBRARIAN)


async def test_return_promotes_oldest_pending_reservation(loans, reservations, library, dispatcher, clock):
    borrower = await library.add_user()
    first = await library.add_user()
    second = await library.add_user()
    book_id = await library.add_book(title="Dune", quantity=1)
    loan = await loans.create_loan(borrower, book_id)

    r_first = await reservations.create_reservation(first, book_id, member(first))
    clock.advance(minutes=5)
    r_second = await reservations.create_reservation(second, book_id, member(second))

    returned = await loans.return_loan(loan.loan_id)

    assert returned.reservation_notified is True
    assert dispatcher.sent == [
        (first, "The book 'Dune' is now available.", NotificationType.RESERVATION_AVAILABLE)
    ]
    ready = await library.reservation(r_first.id)
    assert ready.status == ReservationStatus.READY
    assert ready.available_at == clock.now
    assert (await library.reservation(r_second.id)).status == ReservationStatus.PENDING
    stock = await library.stock(book_id)
    assert (stock.quantity, stock.is_available) == (0, False)


async def test_held_copy_goes_to_the_reservation_holder(loans, reservations, library):
    borrower = await library.add_user()
    holder = await library.add_user()
    walk_in = await library.add_user()
    book_id = await library.add_book(quantity=1)
    loan = await loans.create_loan(borrower, book_id)
    reservation = await reservations.create_reservation(holder, book_id, member(holder))
    await loans.return_loan(loan.loan_id)

    with pytest.raises(PolicyViolation):
        await loans.create_loan(walk_in, book_id)

    created = await loans.create_loan(holder, book_id, caller=member(holder))

    assert (await library.loan(created.loan_id)).user_id == holder
    assert (await library.reservation(reservation.id)).status == ReservationStatus.COMPLETED
    stock = await library.stock(book_id)
    assert (stock.quantity, stock.is_available) == (0, False)
    assert await library.history(holder) == ["Reservation", "ReservationAvailable", "ReservationCompleted", "Loan"]


async def test_failed_notification_does_not_undo_the_return(
    session_factory, policy, activity_log, clock, loans, reservations, library
):
    class BrokenProducer:
        async def send_and_wait(self, topic, key=None, value=None):
            raise ConnectionError("broker unavailable")

    log_store = NotificationLogStore(session_factory)
    dispatcher = KafkaNotificationDispatcher(BrokenProducer(), log_store, "user.notifications")
    borrower = await library.add_user()
    holder = await library.add_user()
    book_id = await library.add_book(quantity=1)
    loan = await loans.create_loan(borrower, book_id)
    reservation = await reservations.create_reservation(holder, book_id, member(holder))

    async with session_factory() as session:
        service = LoanService(session, policy, dispatcher, activity_log, clock)
        returned = await service.return_loan(loan.loan_id)

    assert returned.reservation_notified is True
    assert (await library.loan(loan.loan_id)).return_date is not None
    assert (await library.reservation(reservation.id)).status == ReservationStatus.READY
    [entry] = await log_store.for_user(holder)
    assert entry.delivered is False
    assert "broker unavailable" in entry.error


async def test_update_loan_sets_due_date(loans, library):
    user_id = await library.add_user()
    book_id = await library.add_book()
    created = await loans.create_loan(user_id, book_id)
    new_due = START + timedelta(days=30)

    await loans.update_loan(created.loan_id, new_due)

    assert (await library.loan(created.loan_id)).due_date == new_due
    assert await library.history(user_id) == ["Loan", "Update"]


async def test_delete_active_loan_releases_its_copy(loans, library):
    user_id = await library.add_user()
    book_id = await library.add_book(quantity=1)
    created = await loans.create_loan(user_id, book_id)

    await loans.delete_loan(created.loan_id)

    assert await library.loan(created.loan_id) is None
    stock = await library.stock(book_id)
    assert (stock.quantity, stock.is_available) == (1, True)
    with pytest.raises(NotFound):
        await loans.delete_loan(created.loan_id)


async def test_list_loans_only_shows_own_loans_to_members(loans, library):
    user_id = await library.add_user()
    other_id = await library.add_user()
    books = [await library.add_book(title=f"Book {i}") for i in range(2)]
    mine = await loans.create_loan(user_id, books[0])
    await loans.create_loan(other_id, books[1])

    assert [loan.id for loan in await loans.list_loans(member(user_id))] == [mine.loan_id]
    assert len(await loans.list_loans(LIBRARIAN)) == 2
    with pytest.raises(Forbidden):
        await loans.get_loan(mine.loan_id, member(other_id))


async def test_activity_log_records_lifecycle(loans, library, activity_log):
    user_id = await library.add_user()
    book_id = await library.add_book()
    created = await loans.create_loan(user_id, book_id)
    await loans.extend_loan(created.loan_id, member(user_id))
    await loans.return_loan(created.loan_id)

    actions = [entry.action for entry in await activity_log.for_user(user_id)]

    assert sorted(actions) == ["CreateLoan", "ExtendLoan", "ReturnLoan"]

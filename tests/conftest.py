import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["KAFKA_BOOTSTRAP_SERVERS"] = "localhost:9092"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ["STOCK_CONSUMER_ENABLED"] = "false"

from datetime import datetime, timedelta, timezone  # noqa: E402
from itertools import count  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from library_service.models import catalog, circulation, logs  # noqa: E402,F401
from library_service.models.base import Base  # noqa: E402
from library_service.models.catalog import Book, Stock, User  # noqa: E402
from library_service.models.circulation import History, Loan, Reservation  # noqa: E402
from library_service.models.logs import NotificationType  # noqa: E402
from library_service.policies import LoanPolicy  # noqa: E402
from library_service.services.activity import ActivityLog  # noqa: E402
from library_service.services.loans import LoanService  # noqa: E402
from library_service.services.notifications import NotificationDispatcher  # noqa: E402
from library_service.services.reminders import LoanReminderService  # noqa: E402
from library_service.services.reservations import ReservationService  # noqa: E402

START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent = []

    async def notify_user(self, user_id, message, type=NotificationType.INFO):
        self.sent.append((user_id, message, type))
        return True


class RequestScoped:
    """Runs every service call in a session of its own, as each HTTP request does."""

    def __init__(self, build, session_factory):
        self._build = build
        self._session_factory = session_factory

    def __getattr__(self, name):
        async def call(*args, **kwargs):
            async with self._session_factory() as session:
                return await getattr(self._build(session), name)(*args, **kwargs)

        return call


class Library:
    """Seeds rows and reads back committed state through fresh sessions."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._emails = count(1)

    async def add_user(self, role: str = "User") -> int:
        async with self._session_factory() as session:
            user = User(first_name="Test", last_name="Reader", email=f"reader{next(self._emails)}@example.org", role=role)
            session.add(user)
            await session.commit()
            return user.id

    async def add_book(self, title: str = "Dune", quantity: int = 1) -> int:
        async with self._session_factory() as session:
            book = Book(title=title)
            session.add(book)
            await session.flush()
            session.add(Stock(book_id=book.id, quantity=quantity, is_available=quantity > 0))
            await session.commit()
            return book.id

    async def stock(self, book_id: int) -> Stock:
        async with self._session_factory() as session:
            return await session.scalar(select(Stock).where(Stock.book_id == book_id))

    async def loan(self, loan_id: int) -> Loan | None:
        async with self._session_factory() as session:
            return await session.get(Loan, loan_id)

    async def reservation(self, reservation_id: int) -> Reservation | None:
        async with self._session_factory() as session:
            return await session.get(Reservation, reservation_id)

    async def history(self, user_id: int) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(History.event_type).where(History.user_id == user_id).order_by(History.id)
            )
            return list(result.scalars())


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'library.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return LoanPolicy(max_active_loans=2)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def activity_log(session_factory):
    return ActivityLog(session_factory)


@pytest.fixture
def library(session_factory):
    return Library(session_factory)


@pytest.fixture
def loans(session_factory, policy, dispatcher, activity_log, clock):
    return RequestScoped(lambda s: LoanService(s, policy, dispatcher, activity_log, clock), session_factory)


@pytest.fixture
def reservations(session_factory, policy, dispatcher, activity_log, clock):
    return RequestScoped(
        lambda s: ReservationService(s, policy, dispatcher, activity_log, clock), session_factory
    )


@pytest.fixture
def reminders(session_factory, policy, dispatcher, clock):
    return RequestScoped(lambda s: LoanReminderService(s, policy, dispatcher, clock), session_factory)


def make_token(user_id: int, *roles: str) -> str:
    return jwt.encode({"sub": str(user_id), "roles": list(roles)}, "test-secret", algorithm="HS256")


def auth(user_id: int, *roles: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, *roles)}"}


@pytest.fixture
async def client(session_factory, dispatcher, policy):
    from library_service.database import get_db, get_session_factory
    from library_service.dependencies import get_dispatcher, get_policy
    from library_service.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_policy] = lambda: policy

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()

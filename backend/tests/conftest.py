"""
Pytest fixtures for the test database, payment processor, clock and client.

Each test gets its own SQLite file. Transactions open with BEGIN IMMEDIATE so
concurrent sessions serialize their writes the way row locks would, and
savepoints behave as they do on PostgreSQL.
"""

import json
import os
from collections import defaultdict
from dataclasses import asdict, replace
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

os.environ["REDIS_ENABLED"] = "false"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./rental_engine_app.db"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from rental_engine.main import app
from rental_engine.api.deps import get_state_machine
from rental_engine.core.config import get_settings
from rental_engine.core.exceptions import InvalidInput, PaymentDeclined
from rental_engine.db.base import Base
from rental_engine.db.session import get_db
from rental_engine.models.listing import Listing
from rental_engine.models.user import User
from rental_engine.services.booking_service import build_state_machine
from rental_engine.services.events import RecordingSubscriber, TransitionPublisher
from rental_engine.services.payments.processor import (
    ProcessorEvent,
    ProcessorIntent,
    ProcessorRefund,
    ProcessorTransfer,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
START = date(2026, 3, 10)
DECLINED_CARD = "pm_card_chargeDeclined"
GOOD_CARD = "pm_card_visa"
WEBHOOK_SIGNATURE = "t=1,v1=test"


class Clock:
    """Settable now() for the state machine."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class FakeProcessor:
    """
    In-memory payment processor.

    Results are remembered per idempotency key, so a replayed call returns
    the original result like the real processor does. `fail()` queues an
    error for the next call of an operation; with applied=True the call takes
    effect before the error is raised (a timeout after the processor acted).
    """

    def __init__(self):
        self.intents: dict[str, ProcessorIntent] = {}
        self.results: dict[str, object] = {}
        self.calls: list[tuple[str, Optional[str]]] = []
        self.transfers: list[ProcessorTransfer] = []
        self.refunds: list[ProcessorRefund] = []
        self._failures = defaultdict(list)
        self._counter = 0

    def fail(self, operation: str, exc: Exception, *, applied: bool = False, times: int = 1) -> None:
        self._failures[operation].extend([(exc, applied)] * times)

    def calls_for(self, operation: str) -> list[Optional[str]]:
        return [key for op, key in self.calls if op == operation]

    def set_status(self, reference: str, status: str) -> None:
        self.intents[reference] = replace(self.intents[reference], status=status)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    async def _run(self, operation: str, key: Optional[str], apply):
        self.calls.append((operation, key))
        queued = self._failures.get(operation)
        failure = queued.pop(0) if queued else None
        if failure and not failure[1]:
            raise failure[0]
        if key is not None and key in self.results:
            result = self.results[key]
        else:
            result = apply()
            if key is not None:
                self.results[key] = result
        if failure:
            raise failure[0]
        return result

    async def authorize(self, *, amount, currency, payment_method, booking_id, idempotency_key):
        def apply():
            if payment_method == DECLINED_CARD:
                raise PaymentDeclined("Your card was declined.", decline_code="card_declined")
            intent = ProcessorIntent(self._next_id("pi"), "requires_capture", amount)
            self.intents[intent.reference] = intent
            return intent

        return await self._run("authorize", idempotency_key, apply)

    async def capture(self, reference, *, idempotency_key):
        def apply():
            intent = self.intents[reference]
            captured = replace(intent, status="succeeded", amount_received=intent.amount)
            self.intents[reference] = captured
            return captured

        return await self._run("capture", idempotency_key, apply)

    async def retrieve(self, reference):
        return await self._run("retrieve", None, lambda: self.intents[reference])

    async def cancel(self, reference, *, idempotency_key):
        def apply():
            self.set_status(reference, "canceled")
            return self.intents[reference]

        return await self._run("cancel", idempotency_key, apply)

    async def transfer(self, *, amount, currency, destination, booking_id, idempotency_key):
        def apply():
            transfer = ProcessorTransfer(self._next_id("tr"), amount, destination)
            self.transfers.append(transfer)
            return transfer

        return await self._run("transfer", idempotency_key, apply)

    async def refund(self, reference, *, amount, reason, idempotency_key):
        def apply():
            refund = ProcessorRefund(self._next_id("re"), amount, "succeeded")
            self.refunds.append(refund)
            return refund

        return await self._run("refund", idempotency_key, apply)

    def parse_event(self, payload: bytes, signature: str) -> ProcessorEvent:
        if signature != WEBHOOK_SIGNATURE:
            raise InvalidInput("Invalid webhook signature")
        return ProcessorEvent(**json.loads(payload))


def processor_event(event_id: str, reference: str, status: str, amount: int, **extra) -> ProcessorEvent:
    event_type = {
        "succeeded": "payment_intent.succeeded",
        "requires_capture": "payment_intent.amount_capturable_updated",
        "canceled": "payment_intent.canceled",
    }.get(status, "payment_intent.payment_failed")
    received = amount if status == "succeeded" else 0
    return ProcessorEvent(
        event_id=event_id,
        event_type=extra.pop("event_type", event_type),
        reference=reference,
        status=status,
        amount=amount,
        amount_received=received,
        **extra,
    )


def event_payload(event: ProcessorEvent) -> str:
    return json.dumps(asdict(event))


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rental_test.db'}", echo=False)

    @event.listens_for(test_engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(test_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def owner(db_session: AsyncSession) -> User:
    user = User(email="owner@example.com", display_name="Owner", payout_account_id="acct_owner_1")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def renter(db_session: AsyncSession) -> User:
    user = User(email="renter@example.com", display_name="Renter", points_balance=500)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def second_renter(db_session: AsyncSession) -> User:
    user = User(email="renter2@example.com", display_name="Second Renter")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def listing(db_session: AsyncSession, owner: User) -> Listing:
    """$30/day, $150/week, $50 deposit, $15 delivery."""
    item = Listing(
        owner_id=owner.id,
        title="Camping trailer",
        daily_rate_cents=3000,
        weekly_rate_cents=15000,
        security_deposit_cents=5000,
        delivery_fee_cents=1500,
    )
    db_session.add(item)
    await db_session.commit()
    return item


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def recorder() -> RecordingSubscriber:
    return RecordingSubscriber(limit=None)


@pytest.fixture
def publisher(recorder: RecordingSubscriber) -> TransitionPublisher:
    feed = TransitionPublisher()
    feed.subscribe(recorder)
    return feed


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_machine(processor, publisher, clock, sleeps):
    """Build a state machine around any session, sharing processor and clock."""

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    def factory(session: AsyncSession):
        return build_state_machine(
            session, processor, publisher, get_settings(), now_fn=clock, sleep=record_sleep
        )

    return factory


@pytest.fixture
def machine(db_session, make_machine):
    return make_machine(db_session)


@pytest_asyncio.fixture
async def requested_booking(machine, renter, listing):
    """Three days starting START, no extras."""
    return await machine.create_booking(
        renter_id=renter.id,
        listing_id=listing.id,
        start_date=START,
        end_date=START + timedelta(days=2),
    )


@pytest_asyncio.fixture
async def awaiting_booking(machine, requested_booking, owner):
    return await machine.approve(requested_booking.id, owner.id)


@pytest_asyncio.fixture
async def confirmed_booking(machine, awaiting_booking, renter):
    return await machine.submit_payment(awaiting_booking.id, renter.id, GOOD_CARD)


@pytest_asyncio.fixture
async def client(db_session, processor, publisher, make_machine) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over the app with the test session, processor and clock."""

    async def override_get_db():
        yield db_session

    async def override_get_state_machine():
        return make_machine(db_session)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_state_machine] = override_get_state_machine
    app.state.processor = processor
    app.state.publisher = publisher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def caller(user: User) -> dict:
    return {"X-User-Id": str(user.id)}

"""
Tests for the booking state machine: creation, owner decisions, cancellation,
compare-and-swap conflicts and concurrent requests.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from rental_engine.core.exceptions import (
    AuthorizationDenied,
    AvailabilityConflict,
    BookingNotFound,
    DeadlinePassed,
    InvalidInput,
    StateConflict,
)
from rental_engine.models.availability import AvailabilityEntry, AvailabilityStatus
from rental_engine.models.booking import Booking, BookingStatus
from rental_engine.models.idempotency import ProcessedKey
from rental_engine.models.user import User
from rental_engine.services.booking_service import BookingRole, OwnerRequestFilter

from conftest import NOW, START


async def _points(session, user_id):
    return await session.scalar(select(User.points_balance).where(User.id == user_id))


async def _held_days(session, booking_id):
    return await session.scalar(
        select(func.count()).select_from(AvailabilityEntry).where(AvailabilityEntry.booking_id == booking_id)
    )


@pytest.mark.asyncio
async def test_create_booking_holds_dates_and_stamps_price(machine, requested_booking, recorder):
    booking = requested_booking
    assert booking.status == BookingStatus.REQUESTED.value
    assert booking.day_count == 3
    assert booking.approval_deadline == NOW + timedelta(hours=48)
    assert booking.breakdown.base_price == 9000
    assert booking.breakdown.security_deposit == 5000
    assert booking.breakdown.points_earned == 100

    calendar = await machine.ledger.query(booking.listing_id, START, START + timedelta(days=3))
    assert [d.status for d in calendar] == [AvailabilityStatus.TENTATIVELY_HELD] * 3 + [AvailabilityStatus.AVAILABLE]

    assert recorder.events[-1].booking_id == booking.id
    assert recorder.events[-1].previous_status is None
    assert recorder.events[-1].new_status == "requested"


@pytest.mark.asyncio
async def test_create_with_same_idempotency_key_returns_same_booking(machine, renter, listing, db_session):
    kwargs = dict(
        renter_id=renter.id, listing_id=listing.id, start_date=START,
        end_date=START + timedelta(days=1), idempotency_key="req-1",
    )
    first = await machine.create_booking(**kwargs)
    second = await machine.create_booking(**kwargs)

    assert first.id == second.id
    assert await db_session.scalar(select(func.count()).select_from(Booking)) == 1


@pytest.mark.asyncio
async def test_create_rejects_invalid_requests(machine, renter, owner, listing, db_session):
    base = dict(renter_id=renter.id, listing_id=listing.id)

    with pytest.raises(InvalidInput):
        await machine.create_booking(**base, start_date=START, end_date=START - timedelta(days=1))
    with pytest.raises(InvalidInput):
        await machine.create_booking(**base, start_date=NOW.date() - timedelta(days=1), end_date=START)
    with pytest.raises(InvalidInput):
        await machine.create_booking(**base, start_date=START, end_date=START + timedelta(days=400))
    with pytest.raises(InvalidInput):
        await machine.create_booking(
            renter_id=owner.id, listing_id=listing.id, start_date=START, end_date=START
        )
    with pytest.raises(InvalidInput):
        await machine.create_booking(renter_id=renter.id, listing_id=9999, start_date=START, end_date=START)

    listing.is_active = False
    await db_session.commit()
    with pytest.raises(InvalidInput):
        await machine.create_booking(**base, start_date=START, end_date=START)


@pytest.mark.asyncio
async def test_redeemed_points_debited_and_restored_on_reject(machine, db_session, renter, owner, listing):
    booking = await machine.create_booking(
        renter_id=renter.id, listing_id=listing.id, start_date=START,
        end_date=START + timedelta(days=1), points_to_redeem=200,
    )
    assert booking.breakdown.points_redeemed == 200
    assert booking.breakdown.points_credit_applied == 2000
    assert await _points(db_session, renter.id) == 300

    await machine.reject(booking.id, owner.id, "Not available that weekend")
    assert await _points(db_session, renter.id) == 500


@pytest.mark.asyncio
async def test_approve_starts_payment_hold(machine, requested_booking, owner):
    booking = await machine.approve(requested_booking.id, owner.id)

    assert booking.status == BookingStatus.AWAITING_PAYMENT.value
    assert booking.hold_expires_at == NOW + timedelta(minutes=30)


@pytest.mark.asyncio
async def test_only_owner_may_approve_or_reject(machine, requested_booking, renter, second_renter):
    with pytest.raises(AuthorizationDenied):
        await machine.approve(requested_booking.id, renter.id)
    with pytest.raises(AuthorizationDenied):
        await machine.reject(requested_booking.id, second_renter.id)


@pytest.mark.asyncio
async def test_strangers_cannot_read_booking(machine, requested_booking, renter, owner, second_renter):
    assert (await machine.get_booking(requested_booking.id, renter.id)).id == requested_booking.id
    assert (await machine.get_booking(requested_booking.id, owner.id)).id == requested_booking.id
    with pytest.raises(AuthorizationDenied):
        await machine.get_booking(requested_booking.id, second_renter.id)
    with pytest.raises(BookingNotFound):
        await machine.get_booking(424242, renter.id)


@pytest.mark.asyncio
async def test_approve_after_deadline_fails(machine, requested_booking, owner, clock):
    clock.advance(hours=48)
    with pytest.raises(DeadlinePassed):
        await machine.approve(requested_booking.id, owner.id)


@pytest.mark.asyncio
async def test_second_approve_is_a_state_conflict(machine, awaiting_booking, owner):
    with pytest.raises(StateConflict) as exc_info:
        await machine.approve(awaiting_booking.id, owner.id)
    assert exc_info.value.current == BookingStatus.AWAITING_PAYMENT.value


@pytest.mark.asyncio
async def test_reject_releases_dates(machine, db_session, requested_booking, owner):
    booking = await machine.reject(requested_booking.id, owner.id, "Sorry")

    assert booking.status == BookingStatus.REJECTED.value
    assert booking.cancellation_reason == "Sorry"
    assert await _held_days(db_session, booking.id) == 0


@pytest.mark.asyncio
async def test_illegal_edges_raise_without_side_effects(machine, db_session, requested_booking, renter):
    with pytest.raises(StateConflict):
        await machine.start_rental(requested_booking.id, renter.id)
    with pytest.raises(StateConflict):
        await machine.complete(requested_booking.id, renter.id)

    booking = await machine.get_booking(requested_booking.id, renter.id)
    assert booking.status == BookingStatus.REQUESTED.value
    assert await _held_days(db_session, booking.id) == 3


@pytest.mark.asyncio
async def test_stale_expected_status_loses_compare_and_swap(machine, requested_booking, owner, renter):
    """A writer holding an old snapshot cannot overwrite a newer status."""
    stale = await machine.get_booking(requested_booking.id, owner.id)
    await machine.cancel(requested_booking.id, renter.id)

    with pytest.raises(StateConflict) as exc_info:
        await machine._transition(
            stale, BookingStatus.AWAITING_PAYMENT, expected=BookingStatus.REQUESTED
        )
    assert exc_info.value.current == BookingStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_lost_compare_and_swap_leaves_idempotency_key_free(
    machine, db_session, requested_booking, owner, renter
):
    booking_id = requested_booking.id
    stale = await machine.get_booking(booking_id, owner.id)
    await machine.cancel(booking_id, renter.id)

    with pytest.raises(StateConflict):
        await machine._transition(
            stale, BookingStatus.AWAITING_PAYMENT, expected=BookingStatus.REQUESTED, idempotency_key="approve:retry"
        )
    await db_session.commit()

    claimed = await db_session.scalar(
        select(func.count()).select_from(ProcessedKey).where(ProcessedKey.key == "approve:retry")
    )
    assert claimed == 0


@pytest.mark.asyncio
async def test_cancel_requested_booking_releases_dates(machine, db_session, requested_booking, renter, recorder):
    booking = await machine.cancel(requested_booking.id, renter.id, reason="Plans changed")

    assert booking.status == BookingStatus.CANCELLED.value
    assert booking.cancelled_by == renter.id
    assert await _held_days(db_session, booking.id) == 0
    assert (recorder.events[-1].previous_status, recorder.events[-1].new_status) == ("requested", "cancelled")

    with pytest.raises(StateConflict):
        await machine.cancel(requested_booking.id, renter.id)


@pytest.mark.asyncio
async def test_cancelled_dates_can_be_booked_again(machine, requested_booking, renter, second_renter, listing):
    await machine.cancel(requested_booking.id, renter.id)
    again = await machine.create_booking(
        renter_id=second_renter.id, listing_id=listing.id,
        start_date=START, end_date=START + timedelta(days=2),
    )
    assert again.status == BookingStatus.REQUESTED.value


@pytest.mark.asyncio
async def test_pricing_breakdown_is_immutable(requested_booking):
    with pytest.raises(ValueError):
        requested_booking.pricing_breakdown = {"renter_total": 1}


@pytest.mark.asyncio
async def test_status_changed_at_never_goes_backwards(machine, requested_booking, owner, clock):
    created_at = requested_booking.status_changed_at
    clock.advance(minutes=-10)
    booking = await machine.approve(requested_booking.id, owner.id)
    assert booking.status_changed_at > created_at


@pytest.mark.asyncio
async def test_concurrent_overlapping_requests_admit_exactly_one(
    session_factory, make_machine, db_session, renter, second_renter, listing
):
    """Two renters ask for overlapping dates at the same moment."""
    await db_session.commit()

    async def request(renter_id, start):
        async with session_factory() as session:
            try:
                booking = await make_machine(session).create_booking(
                    renter_id=renter_id, listing_id=listing.id,
                    start_date=start, end_date=start + timedelta(days=3),
                )
                return booking.id
            except AvailabilityConflict as exc:
                return exc

    results = await asyncio.gather(
        request(renter.id, START),
        request(second_renter.id, START + timedelta(days=2)),
    )

    booked = [r for r in results if isinstance(r, int)]
    conflicts = [r for r in results if isinstance(r, AvailabilityConflict)]
    assert len(booked) == 1
    assert len(conflicts) == 1

    assert await db_session.scalar(select(func.count()).select_from(Booking)) == 1
    days = (await db_session.execute(
        select(AvailabilityEntry.booking_id).where(AvailabilityEntry.listing_id == listing.id)
    )).scalars().all()
    assert len(days) == 4
    assert set(days) == set(booked)


@pytest.mark.asyncio
async def test_list_bookings_by_role(machine, requested_booking, renter, owner):
    as_renter, total = await machine.list_bookings(renter.id, BookingRole.RENTER)
    assert total == 1 and as_renter[0].id == requested_booking.id

    as_owner, total = await machine.list_bookings(owner.id, BookingRole.OWNER)
    assert total == 1

    _, total = await machine.list_bookings(owner.id, BookingRole.RENTER)
    assert total == 0
    _, total = await machine.list_bookings(renter.id, BookingRole.RENTER, BookingStatus.CONFIRMED)
    assert total == 0


@pytest.mark.asyncio
async def test_owner_request_filters(machine, requested_booking, owner, clock):
    pending, total = await machine.owner_requests(owner.id, OwnerRequestFilter.PENDING)
    assert total == 1
    _, total = await machine.owner_requests(owner.id, OwnerRequestFilter.URGENT)
    assert total == 0

    clock.advance(hours=44)
    _, total = await machine.owner_requests(owner.id, OwnerRequestFilter.URGENT)
    assert total == 1

    clock.advance(hours=5)
    _, total = await machine.owner_requests(owner.id, OwnerRequestFilter.PENDING)
    assert total == 0
    expired, total = await machine.owner_requests(owner.id, OwnerRequestFilter.EXPIRED)
    assert total == 1 and expired[0].id == requested_booking.id
    _, total = await machine.owner_requests(owner.id, OwnerRequestFilter.ALL)
    assert total == 1

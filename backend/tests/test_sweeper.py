"""
Tests for the expiration sweeper.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from rental_engine.core.exceptions import ExpiryRace, PaymentOutcomeUnknown, StateConflict
from rental_engine.models.availability import AvailabilityStatus
from rental_engine.models.booking import BookingStatus
from rental_engine.models.user import User
from rental_engine.services.sweeper import ExpirationSweeper

from conftest import GOOD_CARD, NOW, START


@pytest.fixture
def sweeper(machine):
    return ExpirationSweeper(machine)


@pytest.mark.asyncio
async def test_overdue_request_expires_and_frees_dates(machine, sweeper, requested_booking, renter, clock, recorder):
    clock.advance(hours=49)

    result = await sweeper.sweep()

    assert result.expired_count == 1
    assert result.released_holds == 1
    assert result.released_days == 3
    booking = await machine.get_booking(requested_booking.id, renter.id)
    assert booking.status == BookingStatus.EXPIRED.value
    calendar = await machine.ledger.query(booking.listing_id, START, booking.end_date)
    assert {d.status for d in calendar} == {AvailabilityStatus.AVAILABLE}
    assert recorder.events[-1].new_status == "expired"


@pytest.mark.asyncio
async def test_sweep_twice_equals_sweep_once(machine, sweeper, requested_booking, clock, recorder):
    clock.advance(hours=49)

    first = await sweeper.sweep()
    events_after_first = len(recorder.events)
    second = await sweeper.sweep()

    assert first.expired_count == 1
    assert second.expired_count == 0
    assert second.races == 0
    assert len(recorder.events) == events_after_first


@pytest.mark.asyncio
async def test_bookings_within_deadline_untouched(sweeper, requested_booking, clock):
    clock.advance(hours=47)
    result = await sweeper.sweep()
    assert result.expired_count == 0


@pytest.mark.asyncio
async def test_unpaid_hold_expires(machine, sweeper, awaiting_booking, renter, clock):
    clock.advance(minutes=31)

    result = await sweeper.sweep()

    assert result.expired_count == 1
    booking = await machine.get_booking(awaiting_booking.id, renter.id)
    assert booking.status == BookingStatus.EXPIRED.value


@pytest.mark.asyncio
async def test_expired_booking_restores_points(machine, db_session, sweeper, renter, listing, clock):
    await machine.create_booking(
        renter_id=renter.id, listing_id=listing.id, start_date=START,
        end_date=START, points_to_redeem=100,
    )
    clock.advance(hours=49)
    await sweeper.sweep()

    assert await db_session.scalar(select(User.points_balance).where(User.id == renter.id)) == 500


@pytest.mark.asyncio
async def test_booking_changed_since_selection_counts_as_race(
    machine, sweeper, requested_booking, renter, clock, monkeypatch
):
    """The renter cancels between the sweeper's scan and its write."""
    booking_id, renter_id = requested_booking.id, renter.id
    clock.advance(hours=49)
    candidates = await sweeper.find_overdue(clock.now)
    assert [c.booking_id for c in candidates] == [booking_id]

    await machine.cancel(booking_id, renter_id)

    async def stale_scan(now, limit=None):
        return candidates

    monkeypatch.setattr(sweeper, "find_overdue", stale_scan)
    result = await sweeper.sweep()

    assert result.expired_count == 0
    assert result.races == 1
    booking = await machine.get_booking(booking_id, renter_id)
    assert booking.status == BookingStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_expire_rejects_booking_not_yet_due(machine, requested_booking):
    with pytest.raises(StateConflict):
        await machine.expire(requested_booking.id, BookingStatus.REQUESTED)
    with pytest.raises(ExpiryRace):
        await machine.expire(requested_booking.id, BookingStatus.AWAITING_PAYMENT, now=NOW + timedelta(days=3))


@pytest.mark.asyncio
async def test_dry_run_reports_without_changing(machine, sweeper, requested_booking, renter, clock):
    booking_id, renter_id = requested_booking.id, renter.id
    deadline = requested_booking.approval_deadline
    clock.advance(hours=49)

    result = await sweeper.sweep(dry_run=True)
    assert result.dry_run is True
    assert result.expired_count == 1

    preview = await sweeper.preview()
    assert [(c.booking_id, c.status) for c in preview] == [(booking_id, "requested")]
    assert preview[0].deadline == deadline

    booking = await machine.get_booking(booking_id, renter_id)
    assert booking.status == BookingStatus.REQUESTED.value


@pytest.mark.asyncio
async def test_preview_at_explicit_instant(sweeper, requested_booking):
    assert await sweeper.preview(NOW) == []
    later = await sweeper.preview(NOW + timedelta(hours=48))
    assert len(later) == 1


@pytest.mark.asyncio
async def test_stale_payment_resolved_from_processor(machine, sweeper, awaiting_booking, renter, processor, clock):
    processor.fail("authorize", PaymentOutcomeUnknown("timed out"), applied=True)
    processor.fail("authorize", PaymentOutcomeUnknown("timed out again"))
    booking = await machine.submit_payment(awaiting_booking.id, renter.id, GOOD_CARD)
    assert booking.status == BookingStatus.PAYMENT_PROCESSING.value

    clock.advance(minutes=5)
    assert (await sweeper.sweep()).stale_payments_reconciled == 0

    clock.advance(minutes=15)
    result = await sweeper.sweep()

    assert result.stale_payments_reconciled == 1
    booking = await machine.get_booking(awaiting_booking.id, renter.id)
    assert booking.status == BookingStatus.CONFIRMED.value


@pytest.mark.asyncio
async def test_confirmed_rental_activates_on_start_date(machine, sweeper, confirmed_booking, renter, clock):
    assert (await sweeper.sweep()).activated_count == 0

    clock.now = datetime.combine(START, NOW.timetz())
    result = await sweeper.sweep()

    assert result.activated_count == 1
    booking = await machine.get_booking(confirmed_booking.id, renter.id)
    assert booking.status == BookingStatus.ACTIVE.value

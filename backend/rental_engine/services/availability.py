"""
Availability ledger with atomic date-range reservation.

CONCURRENCY STRATEGY: Unique Constraint as the Lock
===================================================

Problem:
  Two renters request overlapping dates on the same listing at the same
  moment. Both read "free", both write "held". Result: double booking.

Solution:
  A day that is not free is a row in availability_entries, and
  (listing_id, day) is UNIQUE. Reserving a range means inserting one row per
  day inside a SAVEPOINT:

  1. Read the rows already covering the range (fast rejection only)
  2. INSERT the missing days in a single statement
  3. If the database raises a unique violation, another booking got there
     first -> roll back the savepoint, nothing of this range was written

  The read in step 1 is advisory. Correctness comes from step 2: the
  constraint makes check-and-write a single atomic operation, so at most one
  of two overlapping reservations can commit.

  Rows already held by the same booking are left in place, so a retried
  reserve for the same booking succeeds without duplicating anything.

Releasing deletes only rows owned by the booking and is naturally idempotent.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select, delete, update, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.core.exceptions import AvailabilityConflict, InvalidInput
from rental_engine.core.logging import get_logger
from rental_engine.core.metrics import record_reservation
from rental_engine.db.base import utcnow
from rental_engine.models.availability import AvailabilityEntry, AvailabilityStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class DayAvailability:
    listing_id: int
    day: date
    status: AvailabilityStatus
    booking_id: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "listing_id": self.listing_id,
            "day": self.day.isoformat(),
            "status": self.status.value,
            "booking_id": self.booking_id,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DayAvailability":
        return cls(
            listing_id=data["listing_id"],
            day=date.fromisoformat(data["day"]),
            status=AvailabilityStatus(data["status"]),
            booking_id=data.get("booking_id"),
            reason=data.get("reason"),
        )


def days_in_range(start: date, end: date) -> list[date]:
    """Inclusive list of days from start to end."""
    if end < start:
        raise InvalidInput("end date must not be before start date")
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


class AvailabilityLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _entries(self, listing_id: int, start: date, end: date) -> list[AvailabilityEntry]:
        result = await self.session.execute(
            select(AvailabilityEntry)
            .where(
                AvailabilityEntry.listing_id == listing_id,
                AvailabilityEntry.day >= start,
                AvailabilityEntry.day <= end,
            )
            .order_by(AvailabilityEntry.day)
        )
        return list(result.scalars().all())

    async def reserve(self, listing_id: int, start: date, end: date, booking_id: int) -> list[date]:
        """
        Tentatively hold every day of [start, end] for booking_id, or nothing.
        Raises AvailabilityConflict if any day belongs to someone else.
        """
        days = days_in_range(start, end)
        existing = await self._entries(listing_id, start, end)

        taken = [e.day for e in existing if e.booking_id != booking_id]
        if taken:
            record_reservation(False)
            logger.info("reservation_conflict", listing_id=listing_id, booking_id=booking_id, days=len(taken))
            raise AvailabilityConflict(listing_id=listing_id, conflicting_dates=taken)

        already_held = {e.day for e in existing}
        missing = [d for d in days if d not in already_held]
        if not missing:
            return days

        now = utcnow()
        rows = [
            {
                "listing_id": listing_id,
                "day": d,
                "status": AvailabilityStatus.TENTATIVELY_HELD.value,
                "booking_id": booking_id,
                "created_at": now,
                "updated_at": now,
            }
            for d in missing
        ]
        try:
            async with self.session.begin_nested():
                await self.session.execute(insert(AvailabilityEntry), rows)
        except IntegrityError:
            # Lost the race: a concurrent reservation committed first
            record_reservation(False)
            logger.info("reservation_conflict", listing_id=listing_id, booking_id=booking_id, reason="constraint")
            raise AvailabilityConflict(listing_id=listing_id)

        record_reservation(True)
        logger.info(
            "dates_reserved",
            listing_id=listing_id,
            booking_id=booking_id,
            start=start.isoformat(),
            end=end.isoformat(),
        )
        return days

    async def release(self, listing_id: int, start: date, end: date, booking_id: int) -> int:
        """Free the booking's days in [start, end]. Safe to call repeatedly."""
        result = await self.session.execute(
            delete(AvailabilityEntry).where(
                AvailabilityEntry.listing_id == listing_id,
                AvailabilityEntry.booking_id == booking_id,
                AvailabilityEntry.day >= start,
                AvailabilityEntry.day <= end,
            )
        )
        released = result.rowcount or 0
        if released:
            logger.info("dates_released", listing_id=listing_id, booking_id=booking_id, days=released)
        return released

    async def release_from(self, listing_id: int, booking_id: int, first_day: date) -> int:
        """Free the booking's days from first_day onward (the unconsumed tail)."""
        result = await self.session.execute(
            delete(AvailabilityEntry).where(
                AvailabilityEntry.listing_id == listing_id,
                AvailabilityEntry.booking_id == booking_id,
                AvailabilityEntry.day >= first_day,
            )
        )
        return result.rowcount or 0

    async def confirm(self, listing_id: int, booking_id: int) -> int:
        """Convert the booking's tentative hold into booked days."""
        result = await self.session.execute(
            update(AvailabilityEntry)
            .where(
                AvailabilityEntry.listing_id == listing_id,
                AvailabilityEntry.booking_id == booking_id,
                AvailabilityEntry.status == AvailabilityStatus.TENTATIVELY_HELD.value,
            )
            .values(status=AvailabilityStatus.BOOKED.value, updated_at=utcnow())
        )
        return result.rowcount or 0

    async def block(self, listing_id: int, start: date, end: date, reason: Optional[str] = None) -> list[date]:
        """Owner blocks days manually. Atomic like reserve."""
        days = days_in_range(start, end)
        existing = await self._entries(listing_id, start, end)
        booked = [e.day for e in existing if e.status != AvailabilityStatus.MANUALLY_BLOCKED.value]
        if booked:
            raise AvailabilityConflict(listing_id=listing_id, conflicting_dates=booked)

        already_blocked = {e.day for e in existing}
        now = utcnow()
        rows = [
            {
                "listing_id": listing_id,
                "day": d,
                "status": AvailabilityStatus.MANUALLY_BLOCKED.value,
                "booking_id": None,
                "reason": reason,
                "created_at": now,
                "updated_at": now,
            }
            for d in days if d not in already_blocked
        ]
        if rows:
            try:
                async with self.session.begin_nested():
                    await self.session.execute(insert(AvailabilityEntry), rows)
            except IntegrityError:
                raise AvailabilityConflict(listing_id=listing_id)
        logger.info("dates_blocked", listing_id=listing_id, days=len(rows), reason=reason)
        return days

    async def unblock(self, listing_id: int, start: date, end: date) -> int:
        result = await self.session.execute(
            delete(AvailabilityEntry).where(
                AvailabilityEntry.listing_id == listing_id,
                AvailabilityEntry.status == AvailabilityStatus.MANUALLY_BLOCKED.value,
                AvailabilityEntry.day >= start,
                AvailabilityEntry.day <= end,
            )
        )
        return result.rowcount or 0

    async def query(self, listing_id: int, start: date, end: date) -> list[DayAvailability]:
        """One entry per day in [start, end]; days without a row are available."""
        days = days_in_range(start, end)
        by_day = {e.day: e for e in await self._entries(listing_id, start, end)}
        calendar = []
        for d in days:
            entry = by_day.get(d)
            if entry is None:
                calendar.append(DayAvailability(listing_id, d, AvailabilityStatus.AVAILABLE))
            else:
                calendar.append(DayAvailability(
                    listing_id,
                    d,
                    AvailabilityStatus(entry.status),
                    booking_id=entry.booking_id,
                    reason=entry.reason,
                ))
        return calendar

"""
Availability ledger rows: one row per (listing, day) that is NOT free.

Key design decisions:
- A free day has no row, so the unique constraint on (listing_id, day) is
  exactly "at most one non-available entry per listing and date"
- Reserving a range is an INSERT of all its days; two overlapping
  reservations cannot both commit
"""

import enum

from sqlalchemy import Column, Integer, String, Date, ForeignKey, UniqueConstraint, CheckConstraint, Index

from rental_engine.db.base import Base, TimestampMixin


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "available"
    TENTATIVELY_HELD = "tentatively_held"
    BOOKED = "booked"
    MANUALLY_BLOCKED = "manually_blocked"


class AvailabilityEntry(Base, TimestampMixin):
    __tablename__ = "availability_entries"

    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    day = Column(Date, nullable=False)
    status = Column(String(32), nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    reason = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("listing_id", "day", name="uq_availability_listing_day"),
        CheckConstraint(
            "status IN ('tentatively_held', 'booked', 'manually_blocked')",
            name="check_availability_status",
        ),
        CheckConstraint(
            "(status = 'manually_blocked' AND booking_id IS NULL) "
            "OR (status <> 'manually_blocked' AND booking_id IS NOT NULL)",
            name="check_availability_owner",
        ),
        Index("ix_availability_booking_id", "booking_id"),
    )

    def __repr__(self) -> str:
        return f"<AvailabilityEntry(listing={self.listing_id}, day={self.day}, status={self.status})>"

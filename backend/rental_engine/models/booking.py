"""
Booking model: one reservation attempt on one listing.

Key design decisions:
- `status` is a closed enum; legal edges live in services.state_machine
- `pricing_breakdown` is written once at creation and rejected afterwards
- Bookings are never deleted; terminal rows stay for audit and disputes
"""

import enum

from sqlalchemy import Column, Integer, String, Date, Boolean, ForeignKey, Index, CheckConstraint, JSON
from sqlalchemy.orm import relationship, validates

from rental_engine.db.base import Base, TimestampMixin, UTCDateTime
from rental_engine.services.pricing import PricingBreakdown


class BookingStatus(str, enum.Enum):
    REQUESTED = "requested"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_PROCESSING = "payment_processing"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"


# Statuses whose bookings occupy calendar dates
DATE_HOLDING_STATUSES = frozenset({
    BookingStatus.REQUESTED,
    BookingStatus.AWAITING_PAYMENT,
    BookingStatus.PAYMENT_PROCESSING,
    BookingStatus.CONFIRMED,
    BookingStatus.ACTIVE,
})

TERMINAL_STATUSES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.REJECTED,
    BookingStatus.EXPIRED,
})

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in BookingStatus)


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False, index=True)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    day_count = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, default=BookingStatus.REQUESTED.value)

    include_insurance = Column(Boolean, nullable=False, default=False)
    delivery_requested = Column(Boolean, nullable=False, default=False)
    pricing_breakdown = Column(JSON, nullable=False)

    payment_reference = Column(String(255), nullable=True, index=True)
    approval_deadline = Column(UTCDateTime(), nullable=False)
    hold_expires_at = Column(UTCDateTime(), nullable=True)
    status_changed_at = Column(UTCDateTime(), nullable=False)

    cancelled_by = Column(Integer, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    listing = relationship("Listing", lazy="joined")
    payment = relationship("PaymentRecord", back_populates="booking", uselist=False, lazy="selectin")

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="check_booking_date_order"),
        CheckConstraint("day_count > 0", name="check_booking_day_count_positive"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="check_booking_status"),
        # Sweeper scans: pending requests by approval deadline, unpaid holds by expiry
        Index("ix_bookings_status_approval_deadline", "status", "approval_deadline"),
        Index("ix_bookings_status_hold_expires_at", "status", "hold_expires_at"),
        Index("ix_bookings_listing_dates", "listing_id", "start_date", "end_date"),
    )

    @validates("pricing_breakdown")
    def _stamp_once(self, key, value):
        if self.pricing_breakdown is not None:
            raise ValueError("pricing_breakdown is immutable once stamped")
        return value

    @property
    def status_enum(self) -> BookingStatus:
        return BookingStatus(self.status)

    @property
    def breakdown(self) -> PricingBreakdown:
        return PricingBreakdown.from_dict(self.pricing_breakdown)

    def is_party(self, user_id: int) -> bool:
        return user_id in (self.renter_id, self.owner_id)

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, listing={self.listing_id}, status={self.status})>"

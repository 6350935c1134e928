"""
Payment record: the engine's view of a booking's money at the processor.

Amounts are integer cents. The processor stays authoritative; these
columns are refreshed from reconciled events and polls.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from rental_engine.db.base import Base, TimestampMixin


class PaymentRecord(Base, TimestampMixin):
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    processor_reference = Column(String(255), nullable=True, unique=True)
    # Bumped for each new authorization attempt; part of the idempotency token
    attempt = Column(Integer, nullable=False, default=1)
    amount_authorized = Column(Integer, nullable=False, default=0)
    amount_captured = Column(Integer, nullable=False, default=0)
    amount_transferred_to_owner = Column(Integer, nullable=False, default=0)
    amount_refunded = Column(Integer, nullable=False, default=0)
    # Kept so an authorization with an unknown outcome can be replayed with the same token
    payment_method = Column(String(255), nullable=True)
    transfer_reference = Column(String(255), nullable=True)
    last_known_processor_status = Column(String(64), nullable=True)

    booking = relationship("Booking", back_populates="payment")

    __table_args__ = (
        CheckConstraint("amount_captured <= amount_authorized", name="check_captured_lte_authorized"),
        CheckConstraint("amount_refunded <= amount_captured", name="check_refunded_lte_captured"),
        CheckConstraint("amount_transferred_to_owner >= 0", name="check_transferred_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord(booking={self.booking_id}, ref={self.processor_reference}, "
            f"status={self.last_known_processor_status})>"
        )

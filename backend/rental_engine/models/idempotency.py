"""
Processed idempotency keys.

A key is inserted in the same transaction as the side effect it guards, so
a duplicate processor event or a retried transition hits the unique
constraint instead of applying twice.
"""

from sqlalchemy import Column, Integer, String, ForeignKey

from rental_engine.db.base import Base, TimestampMixin


class ProcessedKey(Base, TimestampMixin):
    __tablename__ = "processed_keys"

    id = Column(Integer, primary_key=True)
    key = Column(String(255), nullable=False, unique=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)
    # What the key produced, e.g. "confirm" or "noop"
    outcome = Column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<ProcessedKey(key={self.key}, outcome={self.outcome})>"

"""
Listing model with the pricing inputs a booking is stamped from.

Listing CRUD lives elsewhere; the engine only reads rates, deposit and
ownership. All money columns are integer cents.
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from rental_engine.db.base import Base, TimestampMixin


class Listing(Base, TimestampMixin):
    __tablename__ = "listings"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    daily_rate_cents = Column(Integer, nullable=False)
    weekly_rate_cents = Column(Integer, nullable=True)
    security_deposit_cents = Column(Integer, nullable=False, default=0)
    delivery_fee_cents = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    owner = relationship("User", back_populates="listings")

    __table_args__ = (
        CheckConstraint("daily_rate_cents > 0", name="check_daily_rate_positive"),
        CheckConstraint(
            "weekly_rate_cents IS NULL OR weekly_rate_cents > 0",
            name="check_weekly_rate_positive",
        ),
        CheckConstraint("security_deposit_cents >= 0", name="check_deposit_non_negative"),
        CheckConstraint("delivery_fee_cents >= 0", name="check_delivery_fee_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Listing(id={self.id}, title={self.title}, daily={self.daily_rate_cents})>"

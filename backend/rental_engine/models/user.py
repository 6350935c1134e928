"""
User model: the slice of a marketplace profile the booking engine reads.

Points balance is debited when a renter redeems points on a booking and
credited back if that booking never gets paid.
"""

from sqlalchemy import Column, Integer, String, Boolean, CheckConstraint
from sqlalchemy.orm import relationship

from rental_engine.db.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    points_balance = Column(Integer, nullable=False, default=0)
    # Processor-side connected account that receives owner payouts
    payout_account_id = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    listings = relationship("Listing", back_populates="owner", lazy="selectin")

    __table_args__ = (
        CheckConstraint("points_balance >= 0", name="check_points_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, points={self.points_balance})>"

"""Initial schema: users, listings, bookings, availability ledger, payments, processed keys.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BOOKING_STATUSES = (
    "requested", "awaiting_payment", "payment_processing", "confirmed",
    "active", "completed", "cancelled", "rejected", "expired",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Users table
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("payout_account_id", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("points_balance >= 0", name="check_points_balance_non_negative"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Listings table
    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("daily_rate_cents", sa.Integer(), nullable=False),
        sa.Column("weekly_rate_cents", sa.Integer(), nullable=True),
        sa.Column("security_deposit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("delivery_fee_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("daily_rate_cents > 0", name="check_daily_rate_positive"),
        sa.CheckConstraint(
            "weekly_rate_cents IS NULL OR weekly_rate_cents > 0", name="check_weekly_rate_positive"
        ),
        sa.CheckConstraint("security_deposit_cents >= 0", name="check_deposit_non_negative"),
        sa.CheckConstraint("delivery_fee_cents >= 0", name="check_delivery_fee_non_negative"),
    )
    op.create_index("ix_listings_id", "listings", ["id"])
    op.create_index("ix_listings_owner_id", "listings", ["owner_id"])

    # Bookings table
    status_values = ", ".join(f"'{s}'" for s in BOOKING_STATUSES)
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("renter_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("day_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default=sa.text("'requested'")),
        sa.Column("include_insurance", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("delivery_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("pricing_breakdown", sa.JSON(), nullable=False),
        sa.Column("payment_reference", sa.String(255), nullable=True),
        sa.Column("approval_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hold_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_by", sa.Integer(), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("end_date >= start_date", name="check_booking_date_order"),
        sa.CheckConstraint("day_count > 0", name="check_booking_day_count_positive"),
        sa.CheckConstraint(f"status IN ({status_values})", name="check_booking_status"),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_listing_id", "bookings", ["listing_id"])
    op.create_index("ix_bookings_renter_id", "bookings", ["renter_id"])
    op.create_index("ix_bookings_owner_id", "bookings", ["owner_id"])
    op.create_index("ix_bookings_payment_reference", "bookings", ["payment_reference"])
    # Sweeper scans: pending requests by approval deadline, unpaid holds by expiry.
    # Both queries filter on status first, then range-scan the deadline column.
    op.create_index("ix_bookings_status_approval_deadline", "bookings", ["status", "approval_deadline"])
    op.create_index("ix_bookings_status_hold_expires_at", "bookings", ["status", "hold_expires_at"])
    op.create_index("ix_bookings_listing_dates", "bookings", ["listing_id", "start_date", "end_date"])

    # Availability ledger: one row per non-free (listing, day)
    op.create_table(
        "availability_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        *_timestamps(),
        # UNIQUE (listing_id, day): the double-booking guard.
        # Two transactions reserving an overlapping range both INSERT the shared
        # day; the second one fails here no matter how the requests interleave.
        sa.UniqueConstraint("listing_id", "day", name="uq_availability_listing_day"),
        sa.CheckConstraint(
            "status IN ('tentatively_held', 'booked', 'manually_blocked')",
            name="check_availability_status",
        ),
        sa.CheckConstraint(
            "(status = 'manually_blocked' AND booking_id IS NULL) "
            "OR (status <> 'manually_blocked' AND booking_id IS NOT NULL)",
            name="check_availability_owner",
        ),
    )
    op.create_index("ix_availability_booking_id", "availability_entries", ["booking_id"])

    # Payment records
    op.create_table(
        "payment_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False, unique=True),
        sa.Column("processor_reference", sa.String(255), nullable=True, unique=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("amount_authorized", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("amount_captured", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("amount_transferred_to_owner", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("amount_refunded", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_method", sa.String(255), nullable=True),
        sa.Column("transfer_reference", sa.String(255), nullable=True),
        sa.Column("last_known_processor_status", sa.String(64), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_captured <= amount_authorized", name="check_captured_lte_authorized"),
        sa.CheckConstraint("amount_refunded <= amount_captured", name="check_refunded_lte_captured"),
        sa.CheckConstraint("amount_transferred_to_owner >= 0", name="check_transferred_non_negative"),
    )

    # Processed idempotency keys
    op.create_table(
        "processed_keys",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(255), nullable=False, unique=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=True),
        sa.Column("outcome", sa.String(64), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_processed_keys_booking_id", "processed_keys", ["booking_id"])


def downgrade() -> None:
    op.drop_table("processed_keys")
    op.drop_table("payment_records")
    op.drop_table("availability_entries")
    op.drop_table("bookings")
    op.drop_table("listings")
    op.drop_table("users")

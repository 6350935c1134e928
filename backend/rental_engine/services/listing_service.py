"""
Listing-facing reads and owner calendar edits.
"""

from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.core.config import get_settings
from rental_engine.core.exceptions import AuthorizationDenied, InvalidInput, ListingNotFound
from rental_engine.core.logging import get_logger
from rental_engine.models.listing import Listing
from rental_engine.models.user import User
from rental_engine.services.availability import AvailabilityLedger, days_in_range
from rental_engine.services.cache_service import (
    get_cached_calendar,
    invalidate_calendar_cache,
    set_cached_calendar,
)
from rental_engine.services.pricing import PricingBreakdown, compute_breakdown

logger = get_logger(__name__)
settings = get_settings()

MAX_CALENDAR_DAYS = 366


async def get_listing(db: AsyncSession, listing_id: int) -> Listing:
    listing = await db.get(Listing, listing_id)
    if listing is None:
        raise ListingNotFound(f"Listing {listing_id} not found")
    return listing


async def _get_owned_listing(db: AsyncSession, listing_id: int, owner_id: int) -> Listing:
    listing = await get_listing(db, listing_id)
    if listing.owner_id != owner_id:
        raise AuthorizationDenied("Only the listing owner can change its calendar")
    return listing


async def get_calendar(db: AsyncSession, listing_id: int, start: date, end: date) -> list[dict]:
    """
    Day-by-day availability for a window.
    Served from Redis when possible; the cache is dropped on every ledger write.
    """
    days = days_in_range(start, end)
    if len(days) > MAX_CALENDAR_DAYS:
        raise InvalidInput(f"Calendar window is limited to {MAX_CALENDAR_DAYS} days")

    cached = await get_cached_calendar(listing_id, start, end)
    if cached is not None:
        logger.info("calendar_cache_hit", listing_id=listing_id)
        return cached

    await get_listing(db, listing_id)
    entries = [day.to_dict() for day in await AvailabilityLedger(db).query(listing_id, start, end)]
    await set_cached_calendar(listing_id, start, end, entries)
    return entries


async def block_dates(
    db: AsyncSession,
    listing_id: int,
    owner_id: int,
    start: date,
    end: date,
    reason: Optional[str] = None,
) -> list[date]:
    await _get_owned_listing(db, listing_id, owner_id)
    days = await AvailabilityLedger(db).block(listing_id, start, end, reason)
    await db.commit()
    await invalidate_calendar_cache(listing_id)
    return days


async def unblock_dates(db: AsyncSession, listing_id: int, owner_id: int, start: date, end: date) -> int:
    await _get_owned_listing(db, listing_id, owner_id)
    released = await AvailabilityLedger(db).unblock(listing_id, start, end)
    await db.commit()
    await invalidate_calendar_cache(listing_id)
    logger.info("dates_unblocked", listing_id=listing_id, days=released)
    return released


async def quote(
    db: AsyncSession,
    listing_id: int,
    start: date,
    end: date,
    *,
    include_insurance: bool = False,
    delivery_requested: bool = False,
    points_to_redeem: int = 0,
    renter_id: Optional[int] = None,
) -> PricingBreakdown:
    """Price a prospective booking without holding anything."""
    if end < start:
        raise InvalidInput("End date must be on or after start date")
    listing = await get_listing(db, listing_id)
    day_count = (end - start).days + 1

    points_balance = None
    if renter_id is not None:
        renter = await db.get(User, renter_id)
        points_balance = renter.points_balance if renter else 0
    elif points_to_redeem:
        points_balance = 0

    return compute_breakdown(
        listing.daily_rate_cents,
        day_count,
        weekly_rate=listing.weekly_rate_cents,
        include_insurance=include_insurance,
        security_deposit=listing.security_deposit_cents,
        delivery_fee=listing.delivery_fee_cents if delivery_requested else 0,
        points_applied=points_to_redeem,
        rate_table=settings.RATE_TABLE_VERSION,
        points_balance=points_balance,
        currency=settings.CURRENCY,
    )

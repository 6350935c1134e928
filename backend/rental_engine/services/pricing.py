"""
Pricing calculator: what the renter pays and what the owner is paid.

PRICING RULES (rate table "v1")
===============================

  base_price           daily_rate x days, or full weeks at the weekly rate
                       plus leftover days at the daily rate (7+ days only)
  service_fee          15% of base_price, paid by the renter
  insurance_fee        10% of the daily rate per day, optional
  platform_commission  20% of base_price, withheld from the owner
  points credit        100 points = $10, funded by the platform: capped at
                       service + commission + insurance + delivery

Every amount is integer cents. Each fee is rounded half-up on its own; the
aggregate is a plain sum of already-rounded parts, so the identities

  renter_total = base + service + insurance + delivery + deposit - credit
  owner_net_earnings = base - commission
  platform_total_revenue = service + commission

hold exactly.

Rate tables are versioned. A breakdown records the version it was priced
with, and old versions stay registered so historical bookings can be
re-derived for audits after rates change.

The calculator is pure: no I/O, no clock, no randomness.
"""

import json
from dataclasses import dataclass, asdict, fields
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from rental_engine.core.exceptions import InvalidInput


@dataclass(frozen=True)
class RateTable:
    version: str
    service_fee_rate: Decimal
    commission_rate: Decimal
    insurance_rate: Decimal
    cents_per_point: int
    first_rental_bonus_points: int


RATE_TABLES: dict[str, RateTable] = {
    "v1": RateTable(
        version="v1",
        service_fee_rate=Decimal("0.15"),
        commission_rate=Decimal("0.20"),
        insurance_rate=Decimal("0.10"),
        cents_per_point=10,
        first_rental_bonus_points=100,
    ),
}

DEFAULT_RATE_TABLE = "v1"


def get_rate_table(version: str) -> RateTable:
    try:
        return RATE_TABLES[version]
    except KeyError:
        raise InvalidInput(f"Unknown rate table version: {version}")


@dataclass(frozen=True)
class PricingBreakdown:
    base_price: int
    service_fee: int
    insurance_fee: int
    delivery_fee: int
    security_deposit: int
    points_credit_applied: int
    renter_total: int
    platform_commission: int
    owner_net_earnings: int
    platform_total_revenue: int
    calculation_version: str
    day_count: int
    daily_rate: int
    weekly_rate: Optional[int]
    points_redeemed: int
    points_earned: int
    currency: str

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        """Canonical serialization; identical breakdowns give identical bytes."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict) -> "PricingBreakdown":
        return cls(**{f.name: data[f.name] for f in fields(cls)})

    @property
    def owner_payout(self) -> int:
        return self.owner_net_earnings

    def verify(self) -> None:
        """Raise ValueError if the stored numbers break the fee identities."""
        expected_total = (
            self.base_price + self.service_fee + self.insurance_fee
            + self.delivery_fee + self.security_deposit - self.points_credit_applied
        )
        if self.renter_total != expected_total:
            raise ValueError("renter_total does not match its components")
        if self.owner_net_earnings != self.base_price - self.platform_commission:
            raise ValueError("owner_net_earnings does not match base_price - commission")
        if self.platform_total_revenue != self.service_fee + self.platform_commission:
            raise ValueError("platform_total_revenue does not match service_fee + commission")
        platform_share = self.platform_total_revenue + self.insurance_fee + self.delivery_fee
        if not 0 <= self.points_credit_applied <= platform_share:
            raise ValueError("points_credit_applied exceeds the platform share")


def round_half_up(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _require_cents(name: str, value, *, positive: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer amount of cents")
    if positive and value <= 0:
        raise InvalidInput(f"{name} must be greater than zero")
    if value < 0:
        raise InvalidInput(f"{name} cannot be negative")


def compute_base_price(daily_rate: int, day_count: int, weekly_rate: Optional[int] = None) -> int:
    if weekly_rate is not None and day_count >= 7:
        full_weeks, remainder = divmod(day_count, 7)
        return full_weeks * weekly_rate + remainder * daily_rate
    return daily_rate * day_count


def compute_breakdown(
    daily_rate: int,
    day_count: int,
    weekly_rate: Optional[int] = None,
    include_insurance: bool = False,
    security_deposit: int = 0,
    delivery_fee: int = 0,
    points_applied: int = 0,
    rate_table: Union[RateTable, str, None] = None,
    *,
    points_balance: Optional[int] = None,
    first_rental: bool = False,
    currency: str = "aud",
) -> PricingBreakdown:
    """
    Price a rental. Call once per booking and store the result.

    `points_balance` bounds how many of the requested points can be used;
    None means the caller already checked the balance.
    """
    if isinstance(day_count, bool) or not isinstance(day_count, int) or day_count <= 0:
        raise InvalidInput("day_count must be a positive integer")
    _require_cents("daily_rate", daily_rate, positive=True)
    if weekly_rate is not None:
        _require_cents("weekly_rate", weekly_rate, positive=True)
    _require_cents("security_deposit", security_deposit)
    _require_cents("delivery_fee", delivery_fee)
    if isinstance(points_applied, bool) or not isinstance(points_applied, int) or points_applied < 0:
        raise InvalidInput("points_applied cannot be negative")

    if rate_table is None:
        rate_table = DEFAULT_RATE_TABLE
    table = get_rate_table(rate_table) if isinstance(rate_table, str) else rate_table

    base_price = compute_base_price(daily_rate, day_count, weekly_rate)
    service_fee = round_half_up(base_price * table.service_fee_rate)
    insurance_fee = (
        round_half_up(daily_rate * table.insurance_rate * day_count)
        if include_insurance else 0
    )
    platform_commission = round_half_up(base_price * table.commission_rate)

    total_before_credit = base_price + service_fee + insurance_fee + delivery_fee + security_deposit

    usable_points = points_applied
    if points_balance is not None:
        usable_points = max(0, min(points_applied, points_balance))
    # The credit comes out of the platform's share, so the owner payout and deposit stay covered
    platform_share = service_fee + platform_commission + insurance_fee + delivery_fee
    points_credit = min(usable_points * table.cents_per_point, platform_share)
    # Points are only consumed for the credit actually used
    points_redeemed = -(-points_credit // table.cents_per_point)

    return PricingBreakdown(
        base_price=base_price,
        service_fee=service_fee,
        insurance_fee=insurance_fee,
        delivery_fee=delivery_fee,
        security_deposit=security_deposit,
        points_credit_applied=points_credit,
        renter_total=total_before_credit - points_credit,
        platform_commission=platform_commission,
        owner_net_earnings=base_price - platform_commission,
        platform_total_revenue=service_fee + platform_commission,
        calculation_version=table.version,
        day_count=day_count,
        daily_rate=daily_rate,
        weekly_rate=weekly_rate,
        points_redeemed=points_redeemed,
        points_earned=table.first_rental_bonus_points if first_rental else 0,
        currency=currency,
    )

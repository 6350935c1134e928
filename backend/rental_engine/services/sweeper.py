"""
Expiration sweeper (background task and cron/CLI entrypoint).

Each pass:
  - expires REQUESTED bookings past their approval deadline and
    AWAITING_PAYMENT bookings past their payment hold, releasing their dates
  - polls the processor for bookings stuck in PAYMENT_PROCESSING
  - starts CONFIRMED rentals whose start date has arrived

Every change goes through the state machine's compare-and-swap, so a pass
that overlaps with a user action, or with another pass, changes each
booking at most once. Losing the swap is logged as an expiry race and
skipped. Running a pass twice is the same as running it once.
"""

import argparse
import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_, select

from rental_engine.core.config import Settings, get_settings
from rental_engine.core.exceptions import AvailabilityConflict, ExpiryRace, PaymentError, StateConflict
from rental_engine.core.logging import get_logger, setup_logging
from rental_engine.core.metrics import record_sweep_expired, record_sweep_race, record_sweep_run
from rental_engine.models.booking import Booking, BookingStatus
from rental_engine.services.booking_service import BookingStateMachine, build_state_machine
from rental_engine.services.events import TransitionPublisher
from rental_engine.services.payments.processor import PaymentProcessor

logger = get_logger(__name__)


@dataclass
class SweepResult:
    expired_count: int = 0
    released_holds: int = 0
    released_days: int = 0
    races: int = 0
    stale_payments_reconciled: int = 0
    activated_count: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SweepCandidate:
    booking_id: int
    status: str
    deadline: datetime

    def to_dict(self) -> dict:
        return {"booking_id": self.booking_id, "status": self.status, "deadline": self.deadline.isoformat()}


class ExpirationSweeper:
    def __init__(self, machine: BookingStateMachine, settings: Optional[Settings] = None):
        self.machine = machine
        self.session = machine.session
        self.settings = settings or machine.settings

    async def find_overdue(self, now: datetime, limit: Optional[int] = None) -> list[SweepCandidate]:
        requested = BookingStatus.REQUESTED.value
        awaiting = BookingStatus.AWAITING_PAYMENT.value
        query = (
            select(Booking.id, Booking.status, Booking.approval_deadline, Booking.hold_expires_at)
            .where(or_(
                and_(Booking.status == requested, Booking.approval_deadline <= now),
                and_(Booking.status == awaiting, Booking.hold_expires_at <= now),
            ))
            .order_by(Booking.id)
            .limit(limit or self.settings.SWEEP_BATCH_SIZE)
        )
        rows = (await self.session.execute(query)).all()
        return [
            SweepCandidate(
                booking_id=row.id,
                status=row.status,
                deadline=row.approval_deadline if row.status == requested else row.hold_expires_at,
            )
            for row in rows
        ]

    async def find_stale_payments(self, now: datetime, limit: Optional[int] = None) -> list[int]:
        cutoff = now - timedelta(minutes=self.settings.STALE_PAYMENT_MINUTES)
        result = await self.session.execute(
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.PAYMENT_PROCESSING.value,
                Booking.status_changed_at <= cutoff,
            )
            .order_by(Booking.id)
            .limit(limit or self.settings.SWEEP_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def find_due_rentals(self, now: datetime, limit: Optional[int] = None) -> list[int]:
        result = await self.session.execute(
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.CONFIRMED.value,
                Booking.start_date <= now.date(),
            )
            .order_by(Booking.id)
            .limit(limit or self.settings.SWEEP_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def preview(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> list[SweepCandidate]:
        """What a sweep at `now` would expire. Changes nothing."""
        now = now or self.machine.now_fn()
        candidates = await self.find_overdue(now, limit)
        await self.session.rollback()
        return candidates

    async def sweep(self, now: Optional[datetime] = None, *, limit: Optional[int] = None,
                    dry_run: bool = False) -> SweepResult:
        now = now or self.machine.now_fn()
        if dry_run:
            candidates = await self.preview(now, limit)
            return SweepResult(expired_count=len(candidates), dry_run=True)

        record_sweep_run()
        result = SweepResult()

        for candidate in await self.find_overdue(now, limit):
            try:
                booking = await self.machine.expire(candidate.booking_id, BookingStatus(candidate.status), now=now)
            except ExpiryRace as exc:
                result.races += 1
                record_sweep_race()
                logger.info("expiry_race", booking_id=candidate.booking_id, current=exc.current)
                await self.session.rollback()
                continue
            result.expired_count += 1
            result.released_holds += 1
            result.released_days += booking.day_count
            record_sweep_expired(candidate.status)

        for booking_id in await self.find_stale_payments(now, limit):
            try:
                booking = await self.machine.reconcile_stale(booking_id)
            except (PaymentError, AvailabilityConflict) as exc:
                logger.warning("stale_payment_unresolved", booking_id=booking_id, error=exc.code)
                await self.session.rollback()
                continue
            if booking.status != BookingStatus.PAYMENT_PROCESSING.value:
                result.stale_payments_reconciled += 1

        for booking_id in await self.find_due_rentals(now, limit):
            try:
                await self.machine.start_rental(booking_id, None, today=now.date())
            except StateConflict:
                await self.session.rollback()
                continue
            result.activated_count += 1

        await self.session.commit()
        logger.info("sweep_completed", **result.to_dict())
        return result


async def run_sweeper_loop(
    session_factory,
    processor: PaymentProcessor,
    publisher: Optional[TransitionPublisher] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Sweep forever on the configured interval. Cancel the task to stop."""
    settings = settings or get_settings()
    logger.info("sweeper_started", interval=settings.SWEEP_INTERVAL_SECONDS)
    while True:
        try:
            async with session_factory() as session:
                machine = build_state_machine(session, processor, publisher, settings)
                await ExpirationSweeper(machine, settings).sweep()
        except Exception as e:
            logger.error("sweep_failed", error=str(e), exc_info=True)
        await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)


async def _run_once(limit: int, dry_run: bool) -> SweepResult:
    from rental_engine.db.session import SessionLocal, engine
    from rental_engine.services.cache_service import close_redis, get_redis
    from rental_engine.services.payments.stripe_processor import StripeProcessor

    settings = get_settings()
    processor = StripeProcessor(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        timeout=settings.PAYMENT_TIMEOUT_SECONDS,
    )
    publisher = TransitionPublisher(await get_redis(), settings.TRANSITION_CHANNEL)
    try:
        async with SessionLocal() as session:
            machine = build_state_machine(session, processor, publisher, settings)
            return await ExpirationSweeper(machine, settings).sweep(limit=limit, dry_run=dry_run)
    finally:
        await close_redis()
        await engine.dispose()


def main() -> None:  # pragma: no cover - CLI entry point
    parser = argparse.ArgumentParser(description="Expire overdue booking requests and payment holds")
    parser.add_argument("--dry-run", action="store_true", help="Report eligible bookings without changing them")
    parser.add_argument("--limit", type=int, default=get_settings().SWEEP_BATCH_SIZE,
                        help="Maximum bookings to process per category")
    args = parser.parse_args()

    setup_logging()
    result = asyncio.run(_run_once(args.limit, args.dry_run))
    logger.info("sweep_cli_finished", **result.to_dict())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()

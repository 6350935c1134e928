"""
Booking state machine with compare-and-swap transitions.

CONCURRENCY STRATEGY: Status Compare-and-Swap
=============================================

Problem:
  The renter cancels while the sweeper expires the same booking, or a
  webhook confirms a payment while the renter retries it. Both writers read
  the same status and both apply their transition.

Solution:
  Every transition is a conditional UPDATE:

    UPDATE bookings SET status = :target, ...
    WHERE id = :booking_id AND status = :expected

  1. Check the edge against the transition table (illegal -> StateConflict)
  2. Run the conditional UPDATE
  3. If rows_affected == 0 someone else moved the booking first
     -> StateConflict, nothing written
  4. Run the transition's side effects (ledger, payments, points) in the
     same transaction, then commit
  5. Publish (booking_id, previous, new, timestamp) after the commit

  On PostgreSQL the UPDATE row lock is held until commit, so concurrent
  transitions on one booking are totally ordered. The side effects are
  idempotent under their own keys, so a retried transition cannot repeat
  them.

Pricing is computed once at creation and never recomputed.
"""

import asyncio
import enum
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import and_, exists, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.core.config import Settings, get_settings
from rental_engine.core.exceptions import (
    AuthorizationDenied,
    BookingNotFound,
    DeadlinePassed,
    ExpiryRace,
    InvalidInput,
    PaymentDeclined,
    PaymentError,
    PaymentOutcomeUnknown,
    PaymentTransient,
    StateConflict,
)
from rental_engine.core.logging import bind_booking_context, get_logger
from rental_engine.core.metrics import record_conflict, record_transition
from rental_engine.db.base import utcnow
from rental_engine.models.booking import Booking, BookingStatus
from rental_engine.models.idempotency import ProcessedKey
from rental_engine.models.listing import Listing
from rental_engine.models.user import User
from rental_engine.services.availability import AvailabilityLedger
from rental_engine.services.cache_service import invalidate_calendar_cache
from rental_engine.services.events import TransitionEvent, TransitionPublisher
from rental_engine.services.payments.orchestrator import (
    BookingTransitionCommand,
    PaymentOrchestrator,
    TransitionAction,
)
from rental_engine.services.payments.processor import AUTHORIZED_STATUSES, PaymentProcessor
from rental_engine.services.pricing import compute_breakdown, get_rate_table, RateTable
from rental_engine.services.state_machine import CANCELLABLE, assert_transition

logger = get_logger(__name__)

SideEffects = Callable[[Booking], Awaitable[None]]


class BookingRole(str, enum.Enum):
    RENTER = "renter"
    OWNER = "owner"


class OwnerRequestFilter(str, enum.Enum):
    PENDING = "pending"
    URGENT = "urgent"
    EXPIRED = "expired"
    ALL = "all"


@dataclass(frozen=True)
class RefundDecision:
    """How much of the captured payment a cancellation gives back."""

    kind: str
    amount_cents: int = 0

    @classmethod
    def full(cls) -> "RefundDecision":
        return cls("full")

    @classmethod
    def partial(cls, amount_cents: int) -> "RefundDecision":
        if amount_cents < 0:
            raise InvalidInput("refund amount cannot be negative")
        return cls("partial", amount_cents)

    @classmethod
    def none(cls) -> "RefundDecision":
        return cls("none")

    def resolve(self, refundable: int) -> int:
        if self.kind == "full":
            return refundable
        if self.kind == "partial":
            return min(self.amount_cents, refundable)
        return 0


class BookingStateMachine:
    def __init__(
        self,
        session: AsyncSession,
        ledger: AvailabilityLedger,
        payments: PaymentOrchestrator,
        publisher: Optional[TransitionPublisher] = None,
        settings: Optional[Settings] = None,
        now_fn: Callable[[], datetime] = utcnow,
        rate_table: Optional[RateTable] = None,
    ):
        self.session = session
        self.ledger = ledger
        self.payments = payments
        self.publisher = publisher
        self.settings = settings or get_settings()
        self.now_fn = now_fn
        self.rate_table = rate_table or get_rate_table(self.settings.RATE_TABLE_VERSION)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _load(self, booking_id: int) -> Booking:
        booking = await self.session.get(Booking, booking_id, populate_existing=True)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    @staticmethod
    def _require_party(booking: Booking, user_id: Optional[int], *, renter: bool = True, owner: bool = True) -> None:
        # user_id None is the system itself (sweeper, webhooks)
        if user_id is None:
            return
        if renter and user_id == booking.renter_id:
            return
        if owner and user_id == booking.owner_id:
            return
        raise AuthorizationDenied(f"User {user_id} may not perform this action on booking {booking.id}")

    async def _claim(self, key: str, booking_id: Optional[int], outcome: str) -> bool:
        now = self.now_fn()
        try:
            async with self.session.begin_nested():
                await self.session.execute(
                    insert(ProcessedKey).values(
                        key=key, booking_id=booking_id, outcome=outcome, created_at=now, updated_at=now
                    )
                )
        except IntegrityError:
            return False
        return True

    async def _already_claimed(self, key: str) -> bool:
        found = await self.session.scalar(select(ProcessedKey.key).where(ProcessedKey.key == key))
        return found is not None

    async def _publish(self, event: TransitionEvent) -> None:
        if self.publisher is not None:
            await self.publisher.publish(event)

    async def _transition(
        self,
        booking: Booking,
        target: BookingStatus,
        *,
        expected: Optional[BookingStatus] = None,
        changes: Optional[dict] = None,
        side_effects: Optional[SideEffects] = None,
        idempotency_key: Optional[str] = None,
        touches_calendar: bool = False,
    ) -> Booking:
        expected = expected or booking.status_enum
        assert_transition(expected, target)

        if idempotency_key is not None and await self._already_claimed(idempotency_key):
            logger.info("transition_already_applied", booking_id=booking.id, key=idempotency_key)
            return await self._load(booking.id)

        now = self.now_fn()
        previous_change = booking.status_changed_at
        # status_changed_at never goes backwards, even with a skewed clock
        if previous_change is not None and now <= previous_change:
            changed_at = previous_change + timedelta(microseconds=1)
        else:
            changed_at = now

        values = {"status": target.value, "status_changed_at": changed_at, "updated_at": now}
        values.update(changes or {})

        result = await self.session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await self.session.scalar(select(Booking.status).where(Booking.id == booking.id))
            record_conflict(target.value)
            logger.info(
                "transition_conflict",
                booking_id=booking.id,
                expected=expected.value,
                current=current,
                target=target.value,
            )
            raise StateConflict(
                f"Booking {booking.id} is {current}, expected {expected.value}",
                current=current,
                expected=expected.value,
                target=target.value,
            )

        try:
            # The key is claimed only after the update has landed
            if idempotency_key is not None and not await self._claim(idempotency_key, booking.id, target.value):
                logger.info("transition_key_taken", booking_id=booking.id, key=idempotency_key)
                raise StateConflict(
                    f"Booking {booking.id} was changed by a concurrent request",
                    expected=expected.value,
                    target=target.value,
                )
            booking = await self._load(booking.id)
            if side_effects is not None:
                await side_effects(booking)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        record_transition(expected.value, target.value)
        logger.info(
            "booking_transition",
            booking_id=booking.id,
            from_status=expected.value,
            to_status=target.value,
        )
        if touches_calendar:
            await invalidate_calendar_cache(booking.listing_id)
        await self._publish(TransitionEvent(booking.id, expected.value, target.value, changed_at))
        return booking

    async def _release_all(self, booking: Booking) -> int:
        return await self.ledger.release(booking.listing_id, booking.start_date, booking.end_date, booking.id)

    async def _debit_points(self, user_id: int, points: int) -> None:
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.points_balance >= points)
            .values(points_balance=User.points_balance - points)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidInput("Insufficient points balance")

    async def _credit_points(self, user_id: int, points: int) -> None:
        if points <= 0:
            return
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(points_balance=User.points_balance + points)
            .execution_options(synchronize_session=False)
        )

    async def _restore_points(self, booking: Booking) -> None:
        points = booking.breakdown.points_redeemed
        if points:
            await self._credit_points(booking.renter_id, points)
            logger.info("points_restored", booking_id=booking.id, points=points)

    async def _has_completed_rental(self, renter_id: int) -> bool:
        return bool(await self.session.scalar(
            select(exists().where(
                Booking.renter_id == renter_id,
                Booking.status == BookingStatus.COMPLETED.value,
            ))
        ))

    def _validate_dates(self, start_date: date, end_date: date, today: date) -> int:
        if end_date < start_date:
            raise InvalidInput("End date must be on or after start date")
        if start_date < today:
            raise InvalidInput("Start date cannot be in the past")
        day_count = (end_date - start_date).days + 1
        if day_count > self.settings.MAX_BOOKING_DAYS:
            raise InvalidInput(f"Bookings are limited to {self.settings.MAX_BOOKING_DAYS} days")
        if start_date > today + timedelta(days=self.settings.MAX_ADVANCE_DAYS):
            raise InvalidInput(f"Bookings open at most {self.settings.MAX_ADVANCE_DAYS} days in advance")
        return day_count

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        *,
        renter_id: int,
        listing_id: int,
        start_date: date,
        end_date: date,
        include_insurance: bool = False,
        delivery_requested: bool = False,
        points_to_redeem: int = 0,
        idempotency_key: Optional[str] = None,
    ) -> Booking:
        """
        Price the request, hold its dates and store it as REQUESTED.
        Raises AvailabilityConflict if any date is taken.
        """
        create_key = f"create:{renter_id}:{idempotency_key}" if idempotency_key else None
        if create_key:
            existing_id = await self.session.scalar(
                select(ProcessedKey.booking_id).where(ProcessedKey.key == create_key)
            )
            if existing_id is not None:
                logger.info("booking_create_replayed", booking_id=existing_id)
                return await self._load(existing_id)

        now = self.now_fn()
        day_count = self._validate_dates(start_date, end_date, now.date())
        if points_to_redeem < 0:
            raise InvalidInput("points_to_redeem cannot be negative")

        listing = await self.session.get(Listing, listing_id)
        if listing is None or not listing.is_active:
            raise InvalidInput(f"Listing {listing_id} is not available for booking")
        if listing.owner_id == renter_id:
            raise InvalidInput("You cannot book your own listing")
        renter = await self.session.get(User, renter_id, populate_existing=True)
        if renter is None or not renter.is_active:
            raise InvalidInput(f"Unknown renter {renter_id}")

        breakdown = compute_breakdown(
            listing.daily_rate_cents,
            day_count,
            weekly_rate=listing.weekly_rate_cents,
            include_insurance=include_insurance,
            security_deposit=listing.security_deposit_cents,
            delivery_fee=listing.delivery_fee_cents if delivery_requested else 0,
            points_applied=points_to_redeem,
            rate_table=self.rate_table,
            points_balance=renter.points_balance,
            first_rental=not await self._has_completed_rental(renter_id),
            currency=self.settings.CURRENCY,
        )

        booking = Booking(
            listing_id=listing_id,
            renter_id=renter_id,
            owner_id=listing.owner_id,
            start_date=start_date,
            end_date=end_date,
            day_count=day_count,
            status=BookingStatus.REQUESTED.value,
            include_insurance=include_insurance,
            delivery_requested=delivery_requested,
            pricing_breakdown=breakdown.to_dict(),
            approval_deadline=now + timedelta(hours=self.settings.APPROVAL_WINDOW_HOURS),
            status_changed_at=now,
        )
        self.session.add(booking)
        try:
            await self.session.flush()
            await self.ledger.reserve(listing_id, start_date, end_date, booking.id)
            if breakdown.points_redeemed:
                await self._debit_points(renter_id, breakdown.points_redeemed)
            if create_key:
                await self._claim(create_key, booking.id, "created")
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        record_transition("none", BookingStatus.REQUESTED.value)
        logger.info(
            "booking_requested",
            booking_id=booking.id,
            listing_id=listing_id,
            renter_id=renter_id,
            days=day_count,
            renter_total=breakdown.renter_total,
        )
        await invalidate_calendar_cache(listing_id)
        await self._publish(TransitionEvent(booking.id, None, BookingStatus.REQUESTED.value, now))
        return await self._load(booking.id)

    # ------------------------------------------------------------------
    # owner decisions
    # ------------------------------------------------------------------

    async def approve(self, booking_id: int, owner_id: int) -> Booking:
        booking = await self._load(booking_id)
        self._require_party(booking, owner_id, renter=False)
        now = self.now_fn()
        if booking.status == BookingStatus.REQUESTED.value and booking.approval_deadline <= now:
            raise DeadlinePassed(
                "The approval window for this request has passed",
                current=booking.status,
                expected=BookingStatus.REQUESTED.value,
                target=BookingStatus.AWAITING_PAYMENT.value,
            )
        return await self._transition(
            booking,
            BookingStatus.AWAITING_PAYMENT,
            expected=BookingStatus.REQUESTED,
            changes={"hold_expires_at": now + timedelta(minutes=self.settings.PAYMENT_HOLD_MINUTES)},
        )

    async def reject(self, booking_id: int, owner_id: int, reason: Optional[str] = None) -> Booking:
        booking = await self._load(booking_id)
        self._require_party(booking, owner_id, renter=False)

        async def release(b: Booking) -> None:
            await self._release_all(b)
            await self._restore_points(b)

        return await self._transition(
            booking,
            BookingStatus.REJECTED,
            expected=BookingStatus.REQUESTED,
            changes={"cancellation_reason": reason},
            side_effects=release,
            touches_calendar=True,
        )

    # ------------------------------------------------------------------
    # payment
    # ------------------------------------------------------------------

    async def submit_payment(self, booking_id: int, renter_id: int, payment_method: str) -> Booking:
        """
        Authorize and capture the renter total.

        The booking is committed as PAYMENT_PROCESSING before the processor is
        called. It only becomes CONFIRMED from the processor's own reported
        state; a declined or unavailable payment puts it back to
        AWAITING_PAYMENT with the original hold expiry.
        """
        booking = await self._load(booking_id)
        self._require_party(booking, renter_id, owner=False)
        if not payment_method:
            raise InvalidInput("A payment method is required")
        if (
            booking.status == BookingStatus.AWAITING_PAYMENT.value
            and booking.hold_expires_at is not None
            and booking.hold_expires_at <= self.now_fn()
        ):
            raise DeadlinePassed(
                "The payment window for this booking has passed",
                current=booking.status,
                expected=BookingStatus.AWAITING_PAYMENT.value,
                target=BookingStatus.PAYMENT_PROCESSING.value,
            )

        async def prepare(b: Booking) -> None:
            await self.payments.prepare(b, payment_method)

        booking = await self._transition(
            booking,
            BookingStatus.PAYMENT_PROCESSING,
            expected=BookingStatus.AWAITING_PAYMENT,
            side_effects=prepare,
        )
        bind_booking_context(booking.id)

        try:
            intent = await self.payments.authorize(booking, payment_method)
        except PaymentDeclined as exc:
            logger.info("payment_declined", booking_id=booking.id, decline_code=exc.decline_code)
            await self._return_to_awaiting_payment(booking, failed_status="requires_payment_method")
            raise
        except PaymentTransient:
            logger.warning("payment_unavailable", booking_id=booking.id)
            await self._return_to_awaiting_payment(booking, failed_status=None)
            raise
        except PaymentOutcomeUnknown:
            logger.warning("payment_outcome_unknown", booking_id=booking.id, step="authorize")
            await self.session.commit()
            return await self._settle_by_poll(booking)
        except PaymentError:
            await self._return_to_awaiting_payment(booking, failed_status=None)
            raise

        booking.payment_reference = intent.reference
        if intent.is_authorized:
            try:
                await self.payments.capture(booking)
            except PaymentError as exc:
                # The hold stands; capture is retried later or at completion
                logger.warning("capture_deferred", booking_id=booking.id, error=exc.code)
        await self.session.commit()

        booking = await self._settle_by_poll(booking)
        if booking.status == BookingStatus.AWAITING_PAYMENT.value:
            raise PaymentDeclined("The payment was not accepted by the processor")
        return booking

    async def _settle_by_poll(self, booking: Booking) -> Booking:
        try:
            command = await self.payments.poll(booking)
        except (PaymentTransient, PaymentOutcomeUnknown) as exc:
            await self.session.commit()
            logger.warning("payment_poll_deferred", booking_id=booking.id, error=exc.code)
            return await self._load(booking.id)
        return await self.apply(command)

    async def _return_to_awaiting_payment(self, booking: Booking, failed_status: Optional[str]) -> Booking:
        async def record_failure(b: Booking) -> None:
            if failed_status:
                await self.payments.mark_attempt_failed(b, failed_status)

        try:
            return await self._transition(
                booking,
                BookingStatus.AWAITING_PAYMENT,
                expected=BookingStatus.PAYMENT_PROCESSING,
                changes={"payment_reference": None},
                side_effects=record_failure,
            )
        except StateConflict:
            logger.info("payment_fallback_superseded", booking_id=booking.id)
            return await self._load(booking.id)

    async def _confirm(self, booking: Booking) -> Booking:
        async def book_dates(b: Booking) -> None:
            # Re-asserts the hold; a no-op when it is intact
            await self.ledger.reserve(b.listing_id, b.start_date, b.end_date, b.id)
            await self.ledger.confirm(b.listing_id, b.id)

        record = await self.payments.get_record(booking.id)
        changes = None
        if record is not None and record.processor_reference:
            # A reference learned only by polling still lands on the booking
            changes = {"payment_reference": record.processor_reference}

        return await self._transition(
            booking,
            BookingStatus.CONFIRMED,
            expected=BookingStatus.PAYMENT_PROCESSING,
            changes=changes,
            side_effects=book_dates,
            touches_calendar=True,
        )

    async def apply(self, command: BookingTransitionCommand) -> Optional[Booking]:
        """Apply a reconciled payment command. Commands that lost the race are no-ops."""
        if command.booking_id is None:
            await self.session.commit()
            return None
        if command.is_noop:
            await self.session.commit()
            return await self._load(command.booking_id)

        booking = await self._load(command.booking_id)
        try:
            if command.action == TransitionAction.CONFIRM:
                return await self._confirm(booking)
            if command.action == TransitionAction.RETURN_TO_AWAITING_PAYMENT:
                return await self._return_to_awaiting_payment(
                    booking, failed_status=command.processor_status or "requires_payment_method"
                )
        except StateConflict:
            logger.info("payment_command_superseded", booking_id=booking.id, action=command.action.value)
            await self.session.commit()
            return await self._load(booking.id)
        return booking

    async def handle_processor_event(self, event) -> Optional[Booking]:
        command = await self.payments.reconcile(event)
        return await self.apply(command)

    async def retry_capture(self, booking_id: int, user_id: int) -> Booking:
        """Client-driven capture retry; safe to repeat."""
        booking = await self._load(booking_id)
        self._require_party(booking, user_id)
        if booking.status not in (
            BookingStatus.PAYMENT_PROCESSING.value,
            BookingStatus.CONFIRMED.value,
            BookingStatus.ACTIVE.value,
        ):
            raise StateConflict(
                f"Booking {booking.id} has no payment to capture",
                current=booking.status,
                target="capture",
            )
        try:
            await self.payments.capture(booking)
        except PaymentOutcomeUnknown:
            logger.warning("payment_outcome_unknown", booking_id=booking.id, step="capture")
        await self.session.commit()
        if booking.status == BookingStatus.PAYMENT_PROCESSING.value:
            return await self._settle_by_poll(booking)
        return await self._load(booking.id)

    async def reconcile_stale(self, booking_id: int) -> Booking:
        """Resolve a booking stuck in PAYMENT_PROCESSING from processor state."""
        booking = await self._load(booking_id)
        if booking.status != BookingStatus.PAYMENT_PROCESSING.value:
            return booking
        return await self._settle_by_poll(booking)

    # ------------------------------------------------------------------
    # rental
    # ------------------------------------------------------------------

    async def start_rental(
        self, booking_id: int, user_id: Optional[int] = None, today: Optional[date] = None
    ) -> Booking:
        """Pickup confirmed by either party, or the start date reached (user_id None)."""
        booking = await self._load(booking_id)
        self._require_party(booking, user_id)
        today = today or self.now_fn().date()
        if user_id is None and booking.start_date > today:
            raise StateConflict(
                f"Booking {booking.id} has not started yet",
                current=booking.status,
                expected=BookingStatus.CONFIRMED.value,
                target=BookingStatus.ACTIVE.value,
            )
        return await self._transition(booking, BookingStatus.ACTIVE, expected=BookingStatus.CONFIRMED)

    async def complete(
        self,
        booking_id: int,
        user_id: Optional[int],
        damage_deduction_cents: int = 0,
        idempotency_key: Optional[str] = None,
    ) -> Booking:
        """
        Return confirmed. Captures if still needed, pays the owner their net
        earnings and refunds the deposit minus any damage deduction.
        """
        booking = await self._load(booking_id)
        self._require_party(booking, user_id)
        deposit = booking.breakdown.security_deposit
        if damage_deduction_cents < 0 or damage_deduction_cents > deposit:
            raise InvalidInput("Damage deduction must be between zero and the security deposit")
        owner = await self.session.get(User, booking.owner_id)
        tomorrow = self.now_fn().date() + timedelta(days=1)

        async def settle(b: Booking) -> None:
            breakdown = b.breakdown
            await self.payments.capture(b)
            await self.payments.transfer_to_owner(b, owner.payout_account_id if owner else None)
            deposit_refund = breakdown.security_deposit - damage_deduction_cents
            if deposit_refund > 0:
                await self.payments.refund(
                    b, deposit_refund, reason="security_deposit_return", operation="deposit-refund"
                )
            await self.ledger.release_from(b.listing_id, b.id, tomorrow)
            await self._credit_points(b.renter_id, breakdown.points_earned)

        return await self._transition(
            booking,
            BookingStatus.COMPLETED,
            expected=BookingStatus.ACTIVE,
            side_effects=settle,
            idempotency_key=f"complete:{booking.id}:{idempotency_key}" if idempotency_key else None,
            touches_calendar=True,
        )

    # ------------------------------------------------------------------
    # cancellation and expiry
    # ------------------------------------------------------------------

    async def cancel(
        self,
        booking_id: int,
        user_id: Optional[int],
        refund: Optional[RefundDecision] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Booking:
        booking = await self._load(booking_id)
        self._require_party(booking, user_id)
        status = booking.status_enum
        if status not in CANCELLABLE:
            raise StateConflict(
                f"Booking {booking.id} cannot be cancelled while {status.value}",
                current=status.value,
                target=BookingStatus.CANCELLED.value,
            )
        refund = refund or RefundDecision.full()
        tomorrow = self.now_fn().date() + timedelta(days=1)

        async def unwind(b: Booking) -> None:
            record = await self.payments.get_record(b.id)
            if status in (BookingStatus.CONFIRMED, BookingStatus.ACTIVE) and record is not None:
                uncaptured_hold = (
                    record.last_known_processor_status in AUTHORIZED_STATUSES and record.amount_captured == 0
                )
                if uncaptured_hold and refund.kind == "full":
                    await self.payments.cancel_authorization(b)
                elif uncaptured_hold:
                    await self.payments.capture(b)
                if record.amount_captured > 0:
                    amount = refund.resolve(record.amount_captured - record.amount_refunded)
                    if amount > 0:
                        await self.payments.refund(
                            b, amount, reason=reason or "booking_cancelled", operation="cancellation-refund"
                        )

            if status == BookingStatus.ACTIVE:
                await self.ledger.release_from(b.listing_id, b.id, tomorrow)
            else:
                await self._release_all(b)

            if record is None or record.amount_captured == 0:
                await self._restore_points(b)

        return await self._transition(
            booking,
            BookingStatus.CANCELLED,
            expected=status,
            changes={"cancelled_by": user_id, "cancellation_reason": reason},
            side_effects=unwind,
            idempotency_key=f"cancel:{booking.id}:{idempotency_key}" if idempotency_key else None,
            touches_calendar=True,
        )

    async def expire(self, booking_id: int, expected: BookingStatus, now: Optional[datetime] = None) -> Booking:
        """Force an overdue REQUESTED or AWAITING_PAYMENT booking to EXPIRED."""
        booking = await self._load(booking_id)
        if booking.status != expected.value:
            raise ExpiryRace(
                f"Booking {booking.id} moved to {booking.status}",
                current=booking.status,
                expected=expected.value,
                target=BookingStatus.EXPIRED.value,
            )
        now = now or self.now_fn()
        if expected == BookingStatus.REQUESTED:
            deadline = booking.approval_deadline
        else:
            deadline = booking.hold_expires_at
        if deadline is None or deadline > now:
            raise StateConflict(
                f"Booking {booking.id} is not overdue",
                current=booking.status,
                target=BookingStatus.EXPIRED.value,
            )

        async def release(b: Booking) -> None:
            await self._release_all(b)
            await self._restore_points(b)

        try:
            return await self._transition(
                booking,
                BookingStatus.EXPIRED,
                expected=expected,
                side_effects=release,
                touches_calendar=True,
            )
        except ExpiryRace:
            raise
        except StateConflict as exc:
            raise ExpiryRace(
                str(exc), current=exc.current, expected=exc.expected, target=exc.target
            ) from exc

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: int, user_id: Optional[int]) -> Booking:
        booking = await self._load(booking_id)
        self._require_party(booking, user_id)
        return booking

    async def list_bookings(
        self,
        user_id: int,
        role: BookingRole = BookingRole.RENTER,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Booking], int]:
        column = Booking.renter_id if role == BookingRole.RENTER else Booking.owner_id
        query = select(Booking).where(column == user_id)
        if status is not None:
            query = query.where(Booking.status == status.value)
        return await self._paginate(query, Booking.created_at.desc(), page, page_size)

    async def owner_requests(
        self,
        owner_id: int,
        request_filter: OwnerRequestFilter = OwnerRequestFilter.PENDING,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Booking], int]:
        """Owner inbox. "urgent" means the approval deadline is within a few hours."""
        now = self.now_fn()
        requested = Booking.status == BookingStatus.REQUESTED.value
        query = select(Booking).where(Booking.owner_id == owner_id)
        order = Booking.approval_deadline.asc()

        if request_filter == OwnerRequestFilter.PENDING:
            query = query.where(requested, Booking.approval_deadline > now)
        elif request_filter == OwnerRequestFilter.URGENT:
            horizon = now + timedelta(hours=self.settings.URGENT_REQUEST_HOURS)
            query = query.where(requested, Booking.approval_deadline > now, Booking.approval_deadline <= horizon)
        elif request_filter == OwnerRequestFilter.EXPIRED:
            query = query.where(or_(
                and_(requested, Booking.approval_deadline <= now),
                Booking.status == BookingStatus.EXPIRED.value,
            ))
        else:
            order = Booking.created_at.desc()

        return await self._paginate(query, order, page, page_size)

    async def _paginate(self, query, order, page: int, page_size: int) -> tuple[list[Booking], int]:
        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.session.execute(count_query)).scalar()
        result = await self.session.execute(
            query.order_by(order, Booking.id).offset((page - 1) * page_size).limit(page_size)
        )
        return list(result.unique().scalars().all()), total


def build_state_machine(
    session: AsyncSession,
    processor: PaymentProcessor,
    publisher: Optional[TransitionPublisher] = None,
    settings: Optional[Settings] = None,
    *,
    now_fn: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BookingStateMachine:
    settings = settings or get_settings()
    payments = PaymentOrchestrator(
        session,
        processor,
        currency=settings.CURRENCY,
        max_attempts=settings.PAYMENT_MAX_ATTEMPTS,
        backoff_base=settings.PAYMENT_BACKOFF_BASE_SECONDS,
        sleep=sleep,
    )
    return BookingStateMachine(
        session,
        AvailabilityLedger(session),
        payments,
        publisher=publisher,
        settings=settings,
        now_fn=now_fn,
    )

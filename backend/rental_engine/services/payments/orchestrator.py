"""
Payment orchestration: authorize, capture, transfer, refund, reconcile.

IDEMPOTENCY
===========

Every processor call carries a token

    booking:{booking_id}:{operation}:{attempt}

where `attempt` is PaymentRecord.attempt. Network retries of the same logical
call reuse the token, so the processor applies it at most once. A new
authorization after a decline bumps `attempt` and gets a fresh token.

Money-moving calls (transfer, refund) additionally claim their token in
processed_keys before calling out, in the caller's transaction. A second
claim for the same token hits the unique constraint and becomes a no-op, so
our own ledger never counts the same refund twice.

RECONCILIATION
==============

The processor is the source of truth. Webhook events and polls update the
PaymentRecord and are mapped onto a BookingTransitionCommand; the booking
state machine applies the command with its own compare-and-swap. This
module never changes booking status itself.
"""

import asyncio
import enum
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.core.exceptions import (
    PaymentConfigurationError,
    PaymentDeclined,
    PaymentError,
    PaymentOutcomeUnknown,
    PaymentTransient,
)
from rental_engine.core.logging import get_logger
from rental_engine.core.metrics import (
    observe_processor_latency,
    record_processor_call,
    record_processor_retry,
    record_reconciled,
)
from rental_engine.db.base import utcnow
from rental_engine.models.booking import Booking, BookingStatus
from rental_engine.models.idempotency import ProcessedKey
from rental_engine.models.payment import PaymentRecord
from rental_engine.services.payments.processor import (
    AUTHORIZED_STATUSES,
    CAPTURED_STATUSES,
    FAILED_STATUSES,
    PaymentProcessor,
    ProcessorEvent,
    ProcessorIntent,
)

logger = get_logger(__name__)


class TransitionAction(str, enum.Enum):
    CONFIRM = "confirm"
    RETURN_TO_AWAITING_PAYMENT = "return_to_awaiting_payment"
    NOOP = "noop"


@dataclass(frozen=True)
class BookingTransitionCommand:
    action: TransitionAction
    booking_id: Optional[int] = None
    expected_status: Optional[BookingStatus] = None
    idempotency_key: Optional[str] = None
    processor_status: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return self.action == TransitionAction.NOOP


NOOP = BookingTransitionCommand(TransitionAction.NOOP)


def calculate_retry_delay(attempt: int, base: float) -> float:
    """Exponential backoff with jitter."""
    delay = base * (2 ** (attempt - 1))
    return delay + random.uniform(0, delay / 2)


def idempotency_token(booking_id: int, operation: str, attempt: int) -> str:
    return f"booking:{booking_id}:{operation}:{attempt}"


class PaymentOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        processor: PaymentProcessor,
        *,
        currency: str = "aud",
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.processor = processor
        self.currency = currency
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    async def _call(self, operation: str, request: Callable[[], Awaitable]):
        """Run a processor request, retrying transient failures with backoff."""
        for attempt in range(1, self.max_attempts + 1):
            started = time.perf_counter()
            try:
                result = await request()
            except PaymentTransient:
                record_processor_call(operation, "transient")
                if attempt >= self.max_attempts:
                    logger.warning("processor_retries_exhausted", operation=operation, attempts=attempt)
                    raise
                delay = calculate_retry_delay(attempt, self.backoff_base)
                record_processor_retry(operation)
                logger.info("processor_retry_scheduled", operation=operation, attempt=attempt, delay=round(delay, 3))
                await self._sleep(delay)
                continue
            except PaymentDeclined:
                record_processor_call(operation, "declined")
                raise
            except PaymentOutcomeUnknown:
                record_processor_call(operation, "unknown")
                raise
            finally:
                observe_processor_latency(operation, time.perf_counter() - started)
            record_processor_call(operation, "ok")
            return result

    async def _claim_key(self, key: str, booking_id: Optional[int], outcome: str) -> bool:
        """Insert a processed key; False if it was already there."""
        now = utcnow()
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

    async def get_record(self, booking_id: int) -> Optional[PaymentRecord]:
        result = await self.session.execute(
            select(PaymentRecord).where(PaymentRecord.booking_id == booking_id)
        )
        return result.scalar_one_or_none()

    async def _ensure_record(self, booking: Booking) -> PaymentRecord:
        record = await self.get_record(booking.id)
        if record is None:
            record = PaymentRecord(booking_id=booking.id, attempt=1)
            self.session.add(record)
            await self.session.flush()
        return record

    async def _require_record(self, booking: Booking) -> PaymentRecord:
        record = await self.get_record(booking.id)
        if record is None or not record.processor_reference:
            raise PaymentError(f"Booking {booking.id} has no payment at the processor")
        return record

    @staticmethod
    def _apply_status(record: PaymentRecord, status: str, amount: int = 0, amount_received: int = 0) -> None:
        # A captured intent never goes back to merely authorized
        if record.last_known_processor_status in CAPTURED_STATUSES and status in AUTHORIZED_STATUSES:
            return
        record.last_known_processor_status = status
        if status in AUTHORIZED_STATUSES or status in CAPTURED_STATUSES:
            record.amount_authorized = max(record.amount_authorized or 0, amount)
        if status in CAPTURED_STATUSES:
            captured = amount_received or amount
            record.amount_authorized = max(record.amount_authorized or 0, captured)
            record.amount_captured = max(record.amount_captured or 0, captured)

    def _apply_intent(self, record: PaymentRecord, intent: ProcessorIntent) -> None:
        if intent.reference:
            record.processor_reference = intent.reference
        self._apply_status(record, intent.status, intent.amount, intent.amount_received)

    # ------------------------------------------------------------------
    # money movement
    # ------------------------------------------------------------------

    async def prepare(self, booking: Booking, payment_method: str) -> PaymentRecord:
        """Persist the payment method before the processor is called."""
        record = await self._ensure_record(booking)
        record.payment_method = payment_method
        return record

    async def authorize(self, booking: Booking, payment_method: str) -> ProcessorIntent:
        """Place a manual-capture hold for the renter total."""
        record = await self._ensure_record(booking)
        record.payment_method = payment_method
        token = idempotency_token(booking.id, "authorize", record.attempt)
        amount = booking.breakdown.renter_total

        intent = await self._call(
            "authorize",
            lambda: self.processor.authorize(
                amount=amount,
                currency=self.currency,
                payment_method=payment_method,
                booking_id=booking.id,
                idempotency_key=token,
            ),
        )
        self._apply_intent(record, intent)
        logger.info(
            "payment_authorized",
            booking_id=booking.id,
            reference=intent.reference,
            status=intent.status,
            amount=amount,
            attempt=record.attempt,
        )
        return intent

    async def capture(self, booking: Booking) -> PaymentRecord:
        """Capture the held funds. Already-captured payments are left alone."""
        record = await self._require_record(booking)
        if record.last_known_processor_status in CAPTURED_STATUSES:
            logger.info("capture_skipped", booking_id=booking.id, reason="already_captured")
            return record

        token = idempotency_token(booking.id, "capture", record.attempt)
        reference = record.processor_reference
        intent = await self._call(
            "capture", lambda: self.processor.capture(reference, idempotency_key=token)
        )
        self._apply_intent(record, intent)
        logger.info("payment_captured", booking_id=booking.id, amount=record.amount_captured)
        return record

    async def cancel_authorization(self, booking: Booking) -> Optional[PaymentRecord]:
        """Void an uncaptured hold. No-op when nothing is held."""
        record = await self.get_record(booking.id)
        if record is None or not record.processor_reference:
            return None
        if record.last_known_processor_status not in AUTHORIZED_STATUSES:
            return record

        token = idempotency_token(booking.id, "cancel", record.attempt)
        reference = record.processor_reference
        intent = await self._call(
            "cancel", lambda: self.processor.cancel(reference, idempotency_key=token)
        )
        self._apply_intent(record, intent)
        logger.info("authorization_cancelled", booking_id=booking.id)
        return record

    async def transfer_to_owner(
        self, booking: Booking, payout_account_id: Optional[str], amount: Optional[int] = None
    ) -> PaymentRecord:
        """Pay the owner (default: their stamped net earnings) once per booking."""
        record = await self._require_record(booking)
        breakdown = booking.breakdown
        if amount is None:
            amount = breakdown.owner_net_earnings

        if record.transfer_reference:
            return record
        if not payout_account_id:
            raise PaymentConfigurationError(f"Owner of booking {booking.id} has no payout account")
        # Loyalty credit is paid for out of the platform's share, never the owner's
        ceiling = record.amount_captured - breakdown.platform_total_revenue + breakdown.points_credit_applied
        if amount > ceiling:
            raise PaymentError(
                f"Owner transfer of {amount} exceeds captured funds net of platform revenue ({ceiling})"
            )

        token = idempotency_token(booking.id, "transfer", 1)
        if not await self._claim_key(token, booking.id, "transfer"):
            return record

        transfer = await self._call(
            "transfer",
            lambda: self.processor.transfer(
                amount=amount,
                currency=self.currency,
                destination=payout_account_id,
                booking_id=booking.id,
                idempotency_key=token,
            ),
        )
        record.transfer_reference = transfer.reference
        record.amount_transferred_to_owner = (record.amount_transferred_to_owner or 0) + transfer.amount
        logger.info("owner_transfer_sent", booking_id=booking.id, amount=transfer.amount)
        return record

    async def refund(self, booking: Booking, amount: int, *, reason: str, operation: str = "refund") -> int:
        """
        Refund up to `amount` of captured funds. Returns the amount refunded.

        `operation` names the refund (e.g. "cancellation-refund",
        "deposit-refund"); each named refund happens at most once.
        """
        record = await self.get_record(booking.id)
        if record is None or not record.processor_reference or amount <= 0:
            return 0
        refundable = record.amount_captured - record.amount_refunded
        amount = min(amount, refundable)
        if amount <= 0:
            return 0

        token = idempotency_token(booking.id, operation, record.attempt)
        if not await self._claim_key(token, booking.id, operation):
            logger.info("refund_skipped", booking_id=booking.id, operation=operation, reason="already_refunded")
            return 0

        reference = record.processor_reference
        refund = await self._call(
            "refund",
            lambda: self.processor.refund(reference, amount=amount, reason=reason, idempotency_key=token),
        )
        record.amount_refunded = record.amount_refunded + refund.amount
        logger.info("payment_refunded", booking_id=booking.id, amount=refund.amount, operation=operation)
        return refund.amount

    async def mark_attempt_failed(self, booking: Booking, status: str = "requires_payment_method") -> None:
        """
        Record a failed authorization so the next one uses a fresh token.

        The failed intent is forgotten: the next attempt gets its own
        reference, and polling must never read the old one back.
        """
        record = await self.get_record(booking.id)
        if record is None:
            return
        if record.processor_reference:
            logger.info("failed_intent_dropped", booking_id=booking.id, reference=record.processor_reference)
        record.processor_reference = None
        record.last_known_processor_status = status
        record.attempt = record.attempt + 1

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------

    async def _record_for_event(self, event: ProcessorEvent) -> tuple[Optional[PaymentRecord], bool]:
        """The payment record an event is about, and whether it matched by reference."""
        if event.reference:
            result = await self.session.execute(
                select(PaymentRecord).where(PaymentRecord.processor_reference == event.reference)
            )
            record = result.scalar_one_or_none()
            if record is not None:
                return record, True
        if event.booking_id is not None:
            record = await self.get_record(event.booking_id)
            # A record with no live reference is waiting to learn one (authorize timed out)
            if record is not None and (
                not record.processor_reference or record.last_known_processor_status in FAILED_STATUSES
            ):
                return record, False
        return None, False

    async def _command_for(self, record: PaymentRecord, status: str, key: Optional[str]) -> BookingTransitionCommand:
        booking = await self.session.get(Booking, record.booking_id, populate_existing=True)
        if booking is None or booking.status != BookingStatus.PAYMENT_PROCESSING.value:
            return BookingTransitionCommand(
                TransitionAction.NOOP, booking_id=record.booking_id, idempotency_key=key, processor_status=status
            )
        if status in AUTHORIZED_STATUSES or status in CAPTURED_STATUSES:
            action = TransitionAction.CONFIRM
        elif status in FAILED_STATUSES:
            action = TransitionAction.RETURN_TO_AWAITING_PAYMENT
        else:
            action = TransitionAction.NOOP
        return BookingTransitionCommand(
            action,
            booking_id=record.booking_id,
            expected_status=BookingStatus.PAYMENT_PROCESSING,
            idempotency_key=key,
            processor_status=status,
        )

    async def reconcile(self, event: ProcessorEvent) -> BookingTransitionCommand:
        """
        Fold a processor event into the payment record and say what the
        booking should do. Replaying an event id yields NOOP.
        """
        key = f"processor-event:{event.event_id}"
        record, by_reference = await self._record_for_event(event)
        if record is None:
            await self._claim_key(key, None, "unknown")
            record_reconciled("unknown")
            logger.warning("reconcile_unknown_payment", event_id=event.event_id, reference=event.reference)
            return NOOP

        if not await self._claim_key(key, record.booking_id, event.status):
            record_reconciled("duplicate")
            logger.info("reconcile_duplicate_event", event_id=event.event_id, booking_id=record.booking_id)
            return NOOP

        if not by_reference and event.status in FAILED_STATUSES:
            # Could be an earlier, already declined attempt; only a poll can tell
            record_reconciled("unmatched_failure")
            logger.info(
                "reconcile_unmatched_failure", event_id=event.event_id, booking_id=record.booking_id,
                reference=event.reference,
            )
            return BookingTransitionCommand(
                TransitionAction.NOOP, booking_id=record.booking_id, idempotency_key=key, processor_status=event.status
            )
        if not by_reference and event.reference:
            record.processor_reference = event.reference
        if event.event_type.startswith("charge.refund"):
            record.amount_refunded = min(
                max(record.amount_refunded, event.amount_refunded), record.amount_captured
            )
        else:
            self._apply_status(record, event.status, event.amount, event.amount_received)

        command = await self._command_for(record, event.status, key)
        record_reconciled(command.action.value)
        logger.info(
            "processor_event_reconciled",
            event_id=event.event_id,
            event_type=event.event_type,
            booking_id=record.booking_id,
            processor_status=event.status,
            action=command.action.value,
        )
        return command

    async def poll(self, booking: Booking) -> BookingTransitionCommand:
        """
        Ask the processor for the payment's current state.

        If the authorization itself timed out we never learned a reference;
        replaying it with the same token returns the original result.
        """
        record = await self.get_record(booking.id)
        if record is None:
            return NOOP

        if record.processor_reference:
            reference = record.processor_reference
            intent = await self._call("retrieve", lambda: self.processor.retrieve(reference))
        elif record.payment_method:
            token = idempotency_token(booking.id, "authorize", record.attempt)
            payment_method = record.payment_method
            amount = booking.breakdown.renter_total
            try:
                intent = await self._call(
                    "authorize",
                    lambda: self.processor.authorize(
                        amount=amount,
                        currency=self.currency,
                        payment_method=payment_method,
                        booking_id=booking.id,
                        idempotency_key=token,
                    ),
                )
            except PaymentDeclined as exc:
                logger.info("payment_polled_declined", booking_id=booking.id, decline_code=exc.decline_code)
                record.last_known_processor_status = "requires_payment_method"
                return await self._command_for(record, "requires_payment_method", None)
        else:
            return NOOP

        self._apply_intent(record, intent)
        command = await self._command_for(record, intent.status, None)
        logger.info("payment_polled", booking_id=booking.id, processor_status=intent.status, action=command.action.value)
        return command

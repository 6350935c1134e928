"""
Payment processor port.

The orchestrator talks to the processor only through PaymentProcessor. The
Stripe adapter implements it for production and tests plug in a scripted
double. Every mutating call carries an idempotency token, so replaying a
call with the same token can never double-charge.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

# Processor-side intent statuses, grouped by what they mean for a booking
AUTHORIZED_STATUSES = frozenset({"requires_capture"})
CAPTURED_STATUSES = frozenset({"succeeded"})
FAILED_STATUSES = frozenset({"requires_payment_method", "canceled", "payment_failed"})
PENDING_STATUSES = frozenset({"processing", "requires_action", "requires_confirmation"})


@dataclass(frozen=True)
class ProcessorIntent:
    reference: str
    status: str
    amount: int
    amount_received: int = 0
    decline_code: Optional[str] = None

    @property
    def is_authorized(self) -> bool:
        return self.status in AUTHORIZED_STATUSES

    @property
    def is_captured(self) -> bool:
        return self.status in CAPTURED_STATUSES

    @property
    def has_failed(self) -> bool:
        return self.status in FAILED_STATUSES


@dataclass(frozen=True)
class ProcessorTransfer:
    reference: str
    amount: int
    destination: str


@dataclass(frozen=True)
class ProcessorRefund:
    reference: str
    amount: int
    status: str


@dataclass(frozen=True)
class ProcessorEvent:
    """An asynchronous notification from the processor (webhook)."""

    event_id: str
    event_type: str
    reference: str
    status: str
    amount: int = 0
    amount_received: int = 0
    amount_refunded: int = 0
    booking_id: Optional[int] = None


class PaymentProcessor(Protocol):
    async def authorize(
        self,
        *,
        amount: int,
        currency: str,
        payment_method: str,
        booking_id: int,
        idempotency_key: str,
    ) -> ProcessorIntent:
        ...

    async def capture(self, reference: str, *, idempotency_key: str) -> ProcessorIntent:
        ...

    async def retrieve(self, reference: str) -> ProcessorIntent:
        ...

    async def cancel(self, reference: str, *, idempotency_key: str) -> ProcessorIntent:
        ...

    async def transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        booking_id: int,
        idempotency_key: str,
    ) -> ProcessorTransfer:
        ...

    async def refund(
        self,
        reference: str,
        *,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> ProcessorRefund:
        ...

    def parse_event(self, payload: bytes, signature: str) -> ProcessorEvent:
        ...

"""
Stripe implementation of the payment processor port.

Authorizations are manual-capture PaymentIntents confirmed server-side.
The SDK is synchronous, so each call runs in a worker thread under a hard
timeout. A timed-out call is reported as PaymentOutcomeUnknown, never as
success or failure; the caller resolves it by polling or replaying with
the same idempotency key.
"""

import asyncio
from typing import Any, Optional

import stripe

from rental_engine.core.exceptions import (
    InvalidInput,
    PaymentConfigurationError,
    PaymentDeclined,
    PaymentError,
    PaymentOutcomeUnknown,
    PaymentTransient,
)
from rental_engine.core.logging import get_logger
from rental_engine.services.payments.processor import (
    ProcessorEvent,
    ProcessorIntent,
    ProcessorRefund,
    ProcessorTransfer,
)

logger = get_logger(__name__)

AUTOMATIC_PAYMENT_METHODS_CONFIG = {"enabled": True, "allow_redirects": "never"}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def transfer_group_for(booking_id: int) -> str:
    return f"booking-{booking_id}"


def _handle_stripe_error(exc: stripe.StripeError) -> None:
    """Map Stripe SDK errors onto the engine's payment errors."""
    if isinstance(exc, stripe.CardError):
        raise PaymentDeclined(
            exc.user_message or "Your card was declined.",
            decline_code=getattr(exc, "code", None),
        ) from exc
    if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
        raise PaymentTransient("Temporary Stripe error, please retry.") from exc
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        raise PaymentConfigurationError("Stripe credentials are invalid or unauthorized.") from exc
    if isinstance(exc, stripe.IdempotencyError):
        raise PaymentError("Idempotency key reused with different parameters.") from exc
    if isinstance(exc, stripe.InvalidRequestError):
        raise PaymentDeclined(exc.user_message or "Invalid payment request.") from exc
    raise PaymentError(exc.user_message or "Stripe payment failure.") from exc


def intent_from_stripe(intent: Any) -> ProcessorIntent:
    last_error = _field(intent, "last_payment_error")
    return ProcessorIntent(
        reference=_field(intent, "id"),
        status=_field(intent, "status"),
        amount=int(_field(intent, "amount", 0) or 0),
        amount_received=int(_field(intent, "amount_received", 0) or 0),
        decline_code=_field(last_error, "decline_code"),
    )


def event_from_stripe(event: Any) -> ProcessorEvent:
    obj = event["data"]["object"]
    event_type = event["type"]
    if event_type.startswith("charge."):
        reference = _field(obj, "payment_intent")
        status = "succeeded" if _field(obj, "captured") else _field(obj, "status", "")
        amount_refunded = int(_field(obj, "amount_refunded", 0) or 0)
    else:
        reference = _field(obj, "id")
        status = _field(obj, "status", "")
        amount_refunded = 0
        if event_type == "payment_intent.payment_failed":
            status = "payment_failed"

    metadata = _field(obj, "metadata") or {}
    raw_booking_id = metadata.get("booking_id") if isinstance(metadata, dict) else _field(metadata, "booking_id")
    booking_id: Optional[int] = None
    if raw_booking_id is not None and str(raw_booking_id).isdigit():
        booking_id = int(raw_booking_id)

    return ProcessorEvent(
        event_id=event["id"],
        event_type=event_type,
        reference=reference or "",
        status=status or "",
        amount=int(_field(obj, "amount", 0) or 0),
        amount_received=int(_field(obj, "amount_received", _field(obj, "amount_captured", 0)) or 0),
        amount_refunded=amount_refunded,
        booking_id=booking_id,
    )


class StripeProcessor:
    def __init__(self, api_key: str, webhook_secret: str = "", timeout: float = 10.0):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout

    def _require_key(self) -> str:
        if not self._api_key:
            raise PaymentConfigurationError("Stripe secret key not configured.")
        return self._api_key

    async def _call(self, operation: str, fn, *args, **kwargs) -> Any:
        kwargs["api_key"] = self._require_key()
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("stripe_call_timed_out", operation=operation, timeout=self._timeout)
            raise PaymentOutcomeUnknown(f"Stripe {operation} timed out")
        except stripe.StripeError as exc:
            logger.info("stripe_call_failed", operation=operation, error_type=type(exc).__name__)
            _handle_stripe_error(exc)

    async def authorize(self, *, amount, currency, payment_method, booking_id, idempotency_key):
        intent = await self._call(
            "authorize",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            capture_method="manual",
            confirm=True,
            automatic_payment_methods=AUTOMATIC_PAYMENT_METHODS_CONFIG,
            transfer_group=transfer_group_for(booking_id),
            metadata={"booking_id": str(booking_id)},
            idempotency_key=idempotency_key,
        )
        return intent_from_stripe(intent)

    async def capture(self, reference, *, idempotency_key):
        intent = await self._call(
            "capture", stripe.PaymentIntent.capture, reference, idempotency_key=idempotency_key
        )
        return intent_from_stripe(intent)

    async def retrieve(self, reference):
        intent = await self._call("retrieve", stripe.PaymentIntent.retrieve, reference)
        return intent_from_stripe(intent)

    async def cancel(self, reference, *, idempotency_key):
        intent = await self._call(
            "cancel", stripe.PaymentIntent.cancel, reference, idempotency_key=idempotency_key
        )
        return intent_from_stripe(intent)

    async def transfer(self, *, amount, currency, destination, booking_id, idempotency_key):
        transfer = await self._call(
            "transfer",
            stripe.Transfer.create,
            amount=amount,
            currency=currency,
            destination=destination,
            transfer_group=transfer_group_for(booking_id),
            metadata={"booking_id": str(booking_id)},
            idempotency_key=idempotency_key,
        )
        return ProcessorTransfer(
            reference=_field(transfer, "id"),
            amount=int(_field(transfer, "amount", amount)),
            destination=destination,
        )

    async def refund(self, reference, *, amount, reason, idempotency_key):
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=reference,
            amount=amount,
            reason="requested_by_customer",
            metadata={"engine_reason": reason},
            idempotency_key=idempotency_key,
        )
        return ProcessorRefund(
            reference=_field(refund, "id"),
            amount=int(_field(refund, "amount", amount)),
            status=_field(refund, "status", ""),
        )

    def parse_event(self, payload: bytes, signature: str) -> ProcessorEvent:
        if not self._webhook_secret:
            raise PaymentConfigurationError("Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError:
            logger.warning("webhook_signature_invalid")
            raise InvalidInput("Invalid webhook signature")
        except ValueError:
            raise InvalidInput("Invalid webhook payload")
        return event_from_stripe(event)

"""
Processor webhook endpoint.

This is the only way processor notifications reach the booking state
machine. Payloads are verified against the webhook signing secret; replays
of an already-processed event id are acknowledged and ignored.
"""

from fastapi import APIRouter, Depends, Header, Request

from rental_engine.api.deps import get_processor, get_state_machine
from rental_engine.core.exceptions import InvalidInput
from rental_engine.core.logging import get_logger
from rental_engine.services.booking_service import BookingStateMachine
from rental_engine.services.payments.processor import PaymentProcessor

logger = get_logger(__name__)
router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook")
async def processor_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    processor: PaymentProcessor = Depends(get_processor),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    if not stripe_signature:
        raise InvalidInput("Missing webhook signature")
    payload = await request.body()
    event = processor.parse_event(payload, stripe_signature)
    logger.info("webhook_received", event_id=event.event_id, event_type=event.event_type)

    booking = await machine.handle_processor_event(event)
    return {
        "received": True,
        "event_id": event.event_id,
        "booking_id": booking.id if booking else None,
        "booking_status": booking.status if booking else None,
    }

from rental_engine.services.payments.orchestrator import (
    BookingTransitionCommand,
    PaymentOrchestrator,
    TransitionAction,
)
from rental_engine.services.payments.processor import PaymentProcessor, ProcessorEvent, ProcessorIntent

__all__ = [
    "BookingTransitionCommand",
    "PaymentOrchestrator",
    "PaymentProcessor",
    "ProcessorEvent",
    "ProcessorIntent",
    "TransitionAction",
]

"""
Request-scoped service wiring.

The payment processor and the transition publisher live on app.state so
tests can swap them; everything else is built per request around the
request's database session.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.db.session import get_db
from rental_engine.services.booking_service import BookingStateMachine, build_state_machine
from rental_engine.services.events import TransitionPublisher
from rental_engine.services.payments.processor import PaymentProcessor
from rental_engine.services.sweeper import ExpirationSweeper


def get_processor(request: Request) -> PaymentProcessor:
    return request.app.state.processor


def get_publisher(request: Request) -> TransitionPublisher:
    return request.app.state.publisher


async def get_state_machine(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    publisher: TransitionPublisher = Depends(get_publisher),
) -> BookingStateMachine:
    return build_state_machine(db, processor, publisher)


async def get_sweeper(machine: BookingStateMachine = Depends(get_state_machine)) -> ExpirationSweeper:
    return ExpirationSweeper(machine)

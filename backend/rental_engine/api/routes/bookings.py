"""
Booking lifecycle endpoints.

Every write goes through the booking state machine; a request that loses a
race gets 409 with the booking's current status.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status

from rental_engine.api.deps import get_state_machine
from rental_engine.core.logging import bind_booking_context, get_logger
from rental_engine.core.security import get_current_user_id
from rental_engine.models.booking import BookingStatus
from rental_engine.schemas.booking import (
    BookingCreate,
    BookingDetailResponse,
    BookingListResponse,
    BookingResponse,
    CancelRequest,
    CompleteRequest,
    PaymentSubmit,
    RejectRequest,
)
from rental_engine.services.booking_service import (
    BookingRole,
    BookingStateMachine,
    OwnerRequestFilter,
    RefundDecision,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/bookings", tags=["Bookings"])


def _detail(booking) -> BookingDetailResponse:
    return BookingDetailResponse.model_validate(booking)


@router.post("/", response_model=BookingDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    user_id: int = Depends(get_current_user_id),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """
    Request a rental. The dates are held tentatively until the owner
    answers or the approval window closes. 409 if any date is taken.
    """
    booking = await machine.create_booking(
        renter_id=user_id,
        listing_id=booking_data.listing_id,
        start_date=booking_data.start_date,
        end_date=booking_data.end_date,
        include_insurance=booking_data.include_insurance,
        delivery_requested=booking_data.delivery_requested,
        points_to_redeem=booking_data.points_to_redeem,
        idempotency_key=idempotency_key,
    )
    return _detail(booking)


@router.get("/", response_model=BookingListResponse)
async def list_bookings(
    role: BookingRole = Query(BookingRole.RENTER),
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """The caller's bookings as renter or as owner."""
    bookings, total = await machine.list_bookings(user_id, role, booking_status, page, page_size)
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/requests", response_model=BookingListResponse)
async def owner_requests(
    request_filter: OwnerRequestFilter = Query(OwnerRequestFilter.PENDING, alias="filter"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """Owner inbox: pending, urgent (deadline soon), expired, or all requests."""
    bookings, total = await machine.owner_requests(user_id, request_filter, page, page_size)
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{booking_id}", response_model=BookingDetailResponse)
async def get_booking(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """Current status, stamped pricing breakdown and payment record."""
    return _detail(await machine.get_booking(booking_id, user_id))


@router.post("/{booking_id}/approve", response_model=BookingDetailResponse)
async def approve_booking(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    bind_booking_context(booking_id)
    return _detail(await machine.approve(booking_id, user_id))


@router.post("/{booking_id}/reject", response_model=BookingDetailResponse)
async def reject_booking(
    booking_id: int,
    body: Optional[RejectRequest] = None,
    user_id: int = Depends(get_current_user_id),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    bind_booking_context(booking_id)
    reason = body.reason if body else None
    return _detail(await machine.reject(booking_id, user_id, reason))


@router.post("/{booking_id}/payment", response_model=BookingDetailResponse)
async def submit_payment(
    booking_id: int,
    payment: PaymentSubmit,
    response: Response,
    user_id: int = Depends(get_current_user_id),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """
    Pay for an approved booking. 200 once the processor confirms, 202 while
    the outcome is still being resolved, 402 on decline, 503 if the
    processor stays unavailable.
    """
    bind_booking_context(booking_id)
    booking = await machine.submit_payment(booking_id, user_id, payment.payment_method)
    if booking.status == BookingStatus.PAYMENT_PROCESSING.value:
        response.status_code = status.HTTP_202_ACCEPTED
    return _detail(booking)


@router.post("/{booking_id}/payment/capture", response_model=BookingDetailResponse)
async def retry_capture(
    booking_id: int,
    response: Response,
    user_id: int = Depends(get_current_user_id),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """Retry a capture whose outcome was unknown. Safe to repeat."""
    bind_booking_context(booking_id)
    booking = await machine.retry_capture(booking_id, user_id)
    if booking.status == BookingStatus.PAYMENT_PROCESSING.value:
        response.status_code = status.HTTP_202_ACCEPTED
    return _detail(booking)


@router.post("/{booking_id}/pickup", response_model=BookingDetailResponse)
async def confirm_pickup(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    bind_booking_context(booking_id)
    return _detail(await machine.start_rental(booking_id, user_id))


@router.post("/{booking_id}/return", response_model=BookingDetailResponse)
async def confirm_return(
    booking_id: int,
    body: Optional[CompleteRequest] = None,
    user_id: int = Depends(get_current_user_id),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """Complete the rental: capture if needed, pay the owner, return the deposit."""
    bind_booking_context(booking_id)
    damage = body.damage_deduction_cents if body else 0
    return _detail(await machine.complete(booking_id, user_id, damage, idempotency_key))


@router.post("/{booking_id}/cancel", response_model=BookingDetailResponse)
async def cancel_booking(
    booking_id: int,
    body: Optional[CancelRequest] = None,
    user_id: int = Depends(get_current_user_id),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    bind_booking_context(booking_id)
    body = body or CancelRequest()
    if body.refund == "partial":
        refund = RefundDecision.partial(body.refund_amount_cents)
    elif body.refund == "none":
        refund = RefundDecision.none()
    else:
        refund = RefundDecision.full()
    booking = await machine.cancel(booking_id, user_id, refund, body.reason, idempotency_key)
    logger.info("booking_cancelled", booking_id=booking.id, refund=body.refund)
    return _detail(booking)

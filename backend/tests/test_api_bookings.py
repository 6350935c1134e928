"""
HTTP tests for the booking, listing, webhook and admin endpoints.
"""

from datetime import timedelta

import pytest

from rental_engine.core.exceptions import PaymentOutcomeUnknown, PaymentTransient

from conftest import (
    DECLINED_CARD,
    GOOD_CARD,
    NOW,
    START,
    WEBHOOK_SIGNATURE,
    caller,
    event_payload,
    processor_event,
)

API = "/api/v1"


def _booking_body(listing_id, start=START, days=3, **extra):
    return {
        "listing_id": listing_id,
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=days - 1)).isoformat(),
        **extra,
    }


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_create_booking(client, renter, listing):
    response = await client.post(f"{API}/bookings/", json=_booking_body(listing.id), headers=caller(renter))

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "requested"
    assert data["day_count"] == 3
    assert data["pricing_breakdown"]["base_price"] == 9000
    assert data["payment"] is None


@pytest.mark.asyncio
async def test_create_booking_requires_caller(client, listing):
    response = await client.post(f"{API}/bookings/", json=_booking_body(listing.id))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_booking_rejects_reversed_dates(client, renter, listing):
    body = _booking_body(listing.id)
    body["end_date"] = (START - timedelta(days=1)).isoformat()
    response = await client.post(f"{API}/bookings/", json=body, headers=caller(renter))

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_input"


@pytest.mark.asyncio
async def test_overlapping_booking_conflicts(client, renter, second_renter, listing):
    listing_id = listing.id
    first_caller, second_caller = caller(renter), caller(second_renter)

    first = await client.post(f"{API}/bookings/", json=_booking_body(listing_id), headers=first_caller)
    assert first.status_code == 201

    response = await client.post(
        f"{API}/bookings/",
        json=_booking_body(listing_id, start=START + timedelta(days=2)),
        headers=second_caller,
    )

    assert response.status_code == 409
    data = response.json()
    assert data["code"] == "availability_conflict"
    assert data["conflicting_dates"] == [(START + timedelta(days=2)).isoformat()]


@pytest.mark.asyncio
async def test_renter_cannot_approve(client, requested_booking, renter):
    response = await client.post(f"{API}/bookings/{requested_booking.id}/approve", headers=caller(renter))

    assert response.status_code == 403
    assert response.json()["code"] == "authorization_denied"


@pytest.mark.asyncio
async def test_owner_approves_then_second_approve_conflicts(client, requested_booking, owner):
    url = f"{API}/bookings/{requested_booking.id}/approve"

    response = await client.post(url, headers=caller(owner))
    assert response.status_code == 200
    assert response.json()["status"] == "awaiting_payment"

    response = await client.post(url, headers=caller(owner))
    assert response.status_code == 409
    assert response.json()["current_status"] == "awaiting_payment"


@pytest.mark.asyncio
async def test_unknown_booking_is_404(client, renter):
    response = await client.get(f"{API}/bookings/424242", headers=caller(renter))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_payment_confirms_booking(client, awaiting_booking, renter):
    url = f"{API}/bookings/{awaiting_booking.id}"

    response = await client.post(f"{url}/payment", json={"payment_method": GOOD_CARD}, headers=caller(renter))
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"

    response = await client.get(url, headers=caller(renter))
    payment = response.json()["payment"]
    assert payment["amount_captured"] == response.json()["pricing_breakdown"]["renter_total"]
    assert payment["last_known_processor_status"] == "succeeded"


@pytest.mark.asyncio
async def test_declined_payment_is_402(client, awaiting_booking, renter):
    response = await client.post(
        f"{API}/bookings/{awaiting_booking.id}/payment",
        json={"payment_method": DECLINED_CARD},
        headers=caller(renter),
    )

    assert response.status_code == 402
    assert response.json()["decline_code"] == "card_declined"


@pytest.mark.asyncio
async def test_unavailable_processor_is_503(client, awaiting_booking, renter, processor):
    processor.fail("authorize", PaymentTransient("connection reset"), times=3)

    response = await client.post(
        f"{API}/bookings/{awaiting_booking.id}/payment",
        json={"payment_method": GOOD_CARD},
        headers=caller(renter),
    )

    assert response.status_code == 503
    assert response.json()["detail"] == "Payment temporarily unavailable, please retry."


@pytest.mark.asyncio
async def test_webhook_confirms_processing_booking(client, awaiting_booking, renter, processor):
    processor.fail("capture", PaymentOutcomeUnknown("timed out"), applied=True)
    processor.fail("retrieve", PaymentOutcomeUnknown("timed out"))

    response = await client.post(
        f"{API}/bookings/{awaiting_booking.id}/payment",
        json={"payment_method": GOOD_CARD},
        headers=caller(renter),
    )
    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "payment_processing"

    event = processor_event(
        "evt_1", data["payment"]["processor_reference"], "succeeded", data["pricing_breakdown"]["renter_total"]
    )
    response = await client.post(
        f"{API}/payments/webhook",
        content=event_payload(event),
        headers={"Stripe-Signature": WEBHOOK_SIGNATURE},
    )

    assert response.status_code == 200
    assert response.json()["booking_status"] == "confirmed"


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client):
    event = processor_event("evt_1", "pi_1", "succeeded", 100)
    response = await client.post(
        f"{API}/payments/webhook",
        content=event_payload(event),
        headers={"Stripe-Signature": "t=1,v1=forged"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_for_unknown_payment_is_acknowledged(client):
    event = processor_event("evt_2", "pi_unknown", "succeeded", 100)
    response = await client.post(
        f"{API}/payments/webhook",
        content=event_payload(event),
        headers={"Stripe-Signature": WEBHOOK_SIGNATURE},
    )

    assert response.status_code == 200
    assert response.json()["booking_id"] is None


@pytest.mark.asyncio
async def test_cancel_with_partial_refund(client, confirmed_booking, owner):
    response = await client.post(
        f"{API}/bookings/{confirmed_booking.id}/cancel",
        json={"refund": "partial", "refund_amount_cents": 4000, "reason": "Trailer damaged"},
        headers=caller(owner),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "cancelled"
    assert data["payment"]["amount_refunded"] == 4000


@pytest.mark.asyncio
async def test_partial_refund_needs_amount(client, confirmed_booking, owner):
    response = await client.post(
        f"{API}/bookings/{confirmed_booking.id}/cancel",
        json={"refund": "partial"},
        headers=caller(owner),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_owner_inbox(client, requested_booking, owner, renter):
    response = await client.get(f"{API}/bookings/requests", headers=caller(owner))
    assert response.status_code == 200
    assert [b["id"] for b in response.json()["bookings"]] == [requested_booking.id]

    response = await client.get(f"{API}/bookings/", params={"role": "owner"}, headers=caller(renter))
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_listing_calendar(client, requested_booking, listing):
    response = await client.get(
        f"{API}/listings/{listing.id}/availability",
        params={"start_date": START.isoformat(), "end_date": (START + timedelta(days=3)).isoformat()},
    )

    assert response.status_code == 200
    statuses = [d["status"] for d in response.json()["days"]]
    assert statuses == ["tentatively_held"] * 3 + ["available"]


@pytest.mark.asyncio
async def test_owner_blocks_dates(client, listing, owner, renter):
    listing_id = listing.id
    owner_caller, renter_caller = caller(owner), caller(renter)
    body = {"start_date": START.isoformat(), "end_date": START.isoformat(), "reason": "service"}

    response = await client.post(f"{API}/listings/{listing_id}/blocks", json=body, headers=renter_caller)
    assert response.status_code == 403

    response = await client.post(f"{API}/listings/{listing_id}/blocks", json=body, headers=owner_caller)
    assert response.status_code == 200
    assert response.json()["days"] == 1

    response = await client.post(f"{API}/bookings/", json=_booking_body(listing_id, days=1), headers=renter_caller)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_quote(client, listing):
    response = await client.post(
        f"{API}/listings/quote",
        json={
            "listing_id": listing.id,
            "start_date": START.isoformat(),
            "end_date": (START + timedelta(days=1)).isoformat(),
            "include_insurance": True,
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["base_price"] == 6000
    assert data["service_fee"] == 900
    assert data["insurance_fee"] == 600
    assert data["security_deposit"] == 5000
    assert data["renter_total"] == 12500


@pytest.mark.asyncio
async def test_quote_unknown_listing(client):
    response = await client.post(
        f"{API}/listings/quote",
        json={"listing_id": 9999, "start_date": START.isoformat(), "end_date": START.isoformat()},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_sweep_expires_overdue_requests(client, requested_booking, clock):
    clock.advance(hours=49)

    response = await client.post(f"{API}/admin/sweep")

    assert response.status_code == 200
    data = response.json()
    assert data["expired_count"] == 1
    assert data["released_days"] == 3


@pytest.mark.asyncio
async def test_admin_sweep_preview(client, requested_booking):
    booking_id = requested_booking.id

    response = await client.get(f"{API}/admin/sweep/preview")
    assert response.json()["total"] == 0

    response = await client.get(
        f"{API}/admin/sweep/preview", params={"at": (NOW + timedelta(hours=49)).isoformat()}
    )
    data = response.json()
    assert data["total"] == 1
    assert data["candidates"][0]["booking_id"] == booking_id

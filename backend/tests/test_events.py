"""
Tests for the transition event feed and log redaction.
"""

import json
from unittest.mock import AsyncMock

import pytest

from rental_engine.core.logging import redact_payment_details
from rental_engine.services.events import RecordingSubscriber, TransitionEvent, TransitionPublisher

from conftest import NOW


def _event(booking_id=1, previous="requested", new="awaiting_payment"):
    return TransitionEvent(booking_id, previous, new, NOW)


def test_event_serializes_timestamp():
    assert _event().to_dict() == {
        "booking_id": 1,
        "previous_status": "requested",
        "new_status": "awaiting_payment",
        "timestamp": "2026-03-02T09:00:00+00:00",
    }
    assert _event(previous=None).to_dict()["previous_status"] is None


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others():
    publisher = TransitionPublisher()
    recorder = RecordingSubscriber()

    def broken(event):
        raise RuntimeError("email provider down")

    publisher.subscribe(broken)
    publisher.subscribe(recorder)
    await publisher.publish(_event())

    assert [e.booking_id for e in recorder.events] == [1]


@pytest.mark.asyncio
async def test_async_subscribers_are_awaited():
    publisher = TransitionPublisher()
    seen = []

    async def notify(event):
        seen.append(event.new_status)

    publisher.subscribe(notify)
    await publisher.publish(_event(new="rejected"))

    assert seen == ["rejected"]


@pytest.mark.asyncio
async def test_events_published_to_redis_channel():
    redis_client = AsyncMock()
    publisher = TransitionPublisher(redis_client, channel="transitions")

    await publisher.publish(_event(booking_id=7))

    channel, message = redis_client.publish.await_args.args
    assert channel == "transitions"
    assert json.loads(message)["booking_id"] == 7


@pytest.mark.asyncio
async def test_redis_failure_is_logged_and_dropped():
    redis_client = AsyncMock()
    redis_client.publish.side_effect = ConnectionError("redis gone")
    publisher = TransitionPublisher(redis_client)
    recorder = RecordingSubscriber()
    publisher.subscribe(recorder)

    await publisher.publish(_event())

    assert len(recorder.events) == 1


def test_recording_subscriber_keeps_latest():
    recorder = RecordingSubscriber(limit=2)
    for booking_id in (1, 2, 3):
        recorder(_event(booking_id=booking_id))

    assert [e.booking_id for e in recorder.events] == [2, 3]


def test_log_redaction_masks_payment_method():
    event = redact_payment_details(
        None, "info", {"event": "payment_declined", "payment_method": "pm_card_visa", "signature": "t"}
    )
    assert event == {"event": "payment_declined", "payment_method": "***visa", "signature": "***"}

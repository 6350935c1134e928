"""
Transition event feed.

Every committed state-machine transition is published as
(booking_id, previous_status, new_status, timestamp). Notification, email
and push consumers subscribe here; their failures are logged and dropped so
they can never block or roll back a transition.
"""

import json
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union

from rental_engine.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    booking_id: int
    previous_status: Optional[str]
    new_status: str
    timestamp: datetime

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


Subscriber = Callable[[TransitionEvent], Union[None, Awaitable[None]]]


class TransitionPublisher:
    """Fans a transition out to in-process subscribers and, if given, Redis."""

    def __init__(self, redis_client=None, channel: str = "booking-transitions"):
        self._subscribers: list[Subscriber] = []
        self._redis = redis_client
        self._channel = channel

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    async def publish(self, event: TransitionEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if result is not None and hasattr(result, "__await__"):
                    await result
            except Exception as e:
                logger.warning(
                    "transition_subscriber_failed",
                    booking_id=event.booking_id,
                    subscriber=getattr(subscriber, "__name__", repr(subscriber)),
                    error=str(e),
                )

        if self._redis is not None:
            try:
                await self._redis.publish(self._channel, json.dumps(event.to_dict()))
            except Exception as e:
                logger.warning("transition_publish_failed", booking_id=event.booking_id, error=str(e))


class RecordingSubscriber:
    """Keeps the most recent transitions in memory; used by health checks and tests."""

    def __init__(self, limit: Optional[int] = 100):
        self.events: list[TransitionEvent] = []
        self.limit = limit

    def __call__(self, event: TransitionEvent) -> None:
        self.events.append(event)
        if self.limit is not None and len(self.events) > self.limit:
            del self.events[0]

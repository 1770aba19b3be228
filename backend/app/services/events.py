"""Publish one message per confirmed market transition."""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod

import redis
from loguru import logger

from app.core.config import Settings
from app.domain import TransitionEvent


class EventBroadcaster(ABC):
    """Sink for transition events; subscribers are unknown to this service."""

    @abstractmethod
    def publish(self, event: TransitionEvent) -> None:
        """Emit ``event``. Failures are logged, never raised into the caller."""

    def close(self) -> None:
        return None


class InMemoryEventBroadcaster(EventBroadcaster):
    def __init__(self) -> None:
        self._events: list[TransitionEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: TransitionEvent) -> None:
        with self._lock:
            self._events.append(event)
        logger.info(
            "Transition event {} {} -> {} ({})",
            event.market_id,
            event.from_state.value,
            event.to_state.value,
            event.tx_signature,
        )

    @property
    def events(self) -> list[TransitionEvent]:
        with self._lock:
            return list(self._events)


class RedisEventBroadcaster(EventBroadcaster):
    def __init__(self, client: redis.Redis, *, channel: str) -> None:
        self._client = client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, *, channel: str) -> "RedisEventBroadcaster":
        return cls(redis.Redis.from_url(url), channel=channel)

    def publish(self, event: TransitionEvent) -> None:
        data = json.dumps(event.to_payload())
        try:
            receivers = self._client.publish(self.channel, data)
        except redis.RedisError as exc:
            logger.error(
                "Failed to publish transition event for {} on {}: {}",
                event.market_id,
                self.channel,
                exc,
            )
            return
        logger.info(
            "Published {} -> {} for {} to {} ({} subscriber(s))",
            event.from_state.value,
            event.to_state.value,
            event.market_id,
            self.channel,
            receivers,
        )

    def close(self) -> None:
        self._client.close()


def build_event_broadcaster(settings: Settings) -> EventBroadcaster:
    if settings.redis_url:
        return RedisEventBroadcaster.from_url(settings.redis_url, channel=settings.event_channel)
    logger.warning("REDIS_URL not configured; transition events are kept in memory only")
    return InMemoryEventBroadcaster()

from __future__ import annotations

import json

import redis

from app.domain import MarketState, TransitionEvent
from app.services.events import (
    InMemoryEventBroadcaster,
    RedisEventBroadcaster,
    build_event_broadcaster,
)
from conftest import NOW, market_id


class RecordingRedis:
    def __init__(self, error: Exception | None = None) -> None:
        self.published: list[tuple[str, str]] = []
        self.error = error
        self.closed = False

    def publish(self, channel: str, data: str) -> int:
        if self.error is not None:
            raise self.error
        self.published.append((channel, data))
        return 1

    def close(self) -> None:
        self.closed = True


def _event() -> TransitionEvent:
    return TransitionEvent(
        market_id=market_id(1),
        from_state=MarketState.RESOLVING,
        to_state=MarketState.FINALIZED,
        tx_signature="sig-1",
        timestamp=NOW,
    )


def test_payload_schema():
    """Verify the published message carries the five transition fields."""
    payload = _event().to_payload()
    assert set(payload) == {"marketId", "fromState", "toState", "txSignature", "timestamp"}
    assert payload["fromState"] == "resolving"
    assert payload["toState"] == "finalized"
    assert payload["timestamp"] == int(NOW.timestamp() * 1000)


def test_redis_broadcaster_publishes_json():
    """Verify that events are published as JSON on the configured channel."""
    client = RecordingRedis()
    broadcaster = RedisEventBroadcaster(client, channel="market-transitions")

    broadcaster.publish(_event())

    channel, data = client.published[0]
    assert channel == "market-transitions"
    assert json.loads(data)["txSignature"] == "sig-1"

    broadcaster.close()
    assert client.closed


def test_redis_failure_does_not_raise():
    """Verify that an unreachable broker is logged rather than propagated."""
    broadcaster = RedisEventBroadcaster(RecordingRedis(redis.ConnectionError("down")), channel="c")
    broadcaster.publish(_event())


def test_in_memory_broadcaster_records_events():
    """Verify that the in-memory sink keeps events in publish order."""
    broadcaster = InMemoryEventBroadcaster()
    broadcaster.publish(_event())
    assert [event.tx_signature for event in broadcaster.events] == ["sig-1"]


def test_build_without_redis_url_is_in_memory(test_settings):
    """Verify that no REDIS_URL falls back to the in-memory sink."""
    assert isinstance(build_event_broadcaster(test_settings), InMemoryEventBroadcaster)

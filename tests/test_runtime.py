from __future__ import annotations

import pytest

from conftest import RecordingPublisher
from waste_tracking.bootstrap import build_runtime
from waste_tracking.config import Settings
from waste_tracking.infrastructure.messaging.mqtt_subscriber import MqttIngestSubscriber

MEMORY = {"storage_backend": "memory", "fanout_backend": "memory"}


class UnreachableRelay:
    def __init__(self) -> None:
        self.stopped = 0

    async def start(self) -> None:
        raise ConnectionError("redis unreachable")

    async def stop(self) -> None:
        self.stopped += 1


class ExplodingSubscriber:
    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        raise RuntimeError("broker hung up")


def test_mqtt_subscriber_is_built_only_when_enabled(db):
    assert build_runtime(Settings(**MEMORY), db=db).mqtt_subscriber is None
    runtime = build_runtime(Settings(**MEMORY, mqtt_enabled=True), db=db)
    assert isinstance(runtime.mqtt_subscriber, MqttIngestSubscriber)


@pytest.mark.asyncio
async def test_failed_start_stops_components_already_started(db):
    runtime = build_runtime(Settings(**MEMORY), db=db, publisher=RecordingPublisher())
    relay = UnreachableRelay()
    runtime.redis_relay = relay

    with pytest.raises(ConnectionError):
        await runtime.start()

    assert runtime.ws_runtime.running is False
    assert runtime.event_bus.subscriber_count == 0
    assert relay.stopped == 1
    await runtime.stop()


@pytest.mark.asyncio
async def test_stop_continues_past_a_failing_component(db, caplog):
    runtime = build_runtime(Settings(**MEMORY), db=db, publisher=RecordingPublisher())
    runtime.mqtt_subscriber = ExplodingSubscriber()

    await runtime.start()
    assert runtime.ws_runtime.running is True
    await runtime.stop()

    assert runtime.ws_runtime.running is False
    assert "Runtime component stop failed component=mqtt" in caplog.text

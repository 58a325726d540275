from __future__ import annotations

import asyncio
import json
import logging

import pytest

from conftest import FailingPublisher, RecordingPublisher
from waste_tracking.application.services.fanout import FanoutDispatcher
from waste_tracking.domain.events import WasteEventPublished
from waste_tracking.infrastructure.messaging.event_bus import AsyncEventBus
from waste_tracking.infrastructure.messaging.publishers import (
    EventBusFanoutPublisher,
    RedisFanoutPublisher,
    RedisFanoutRelay,
)
from waste_tracking.infrastructure.realtime.ws_server import BranchWebSocketGateway
from waste_tracking.presentation.api.ws import WsRuntime

PAYLOAD = {"binId": "B1", "netWeight": 5.0, "eventType": "disposal", "isCleaned": False, "createdAt": "x"}


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.accepted = False
        self.sent: list[dict] = []
        self._fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict) -> None:
        if self._fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


class FakePubSub:
    def __init__(self, messages: list[dict] | None = None, error: Exception | None = None) -> None:
        self.channels: list[str] = []
        self.closed = False
        self._messages = list(messages or [])
        self._error = error

    async def subscribe(self, channel: str) -> None:
        self.channels.append(channel)

    async def listen(self):
        for message in self._messages:
            yield message
        if self._error is not None:
            raise self._error
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    def __init__(self, pubsubs: list[FakePubSub] | None = None) -> None:
        self.published: list[tuple[str, str]] = []
        self.closed = False
        self._pubsubs = list(pubsubs or [])

    def pubsub(self) -> FakePubSub:
        return self._pubsubs.pop(0)

    async def aclose(self) -> None:
        self.closed = True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


@pytest.mark.asyncio
async def test_dispatcher_publishes_in_background():
    publisher = RecordingPublisher()
    fanout = FanoutDispatcher(publisher)
    fanout.dispatch("BR1", PAYLOAD)
    assert fanout.pending == 1
    await fanout.drain()
    assert publisher.calls == [("BR1", PAYLOAD)]
    assert fanout.pending == 0


@pytest.mark.asyncio
async def test_dispatcher_logs_and_drops_failures(caplog):
    publisher = FailingPublisher()
    fanout = FanoutDispatcher(publisher)
    with caplog.at_level(logging.ERROR):
        task = fanout.dispatch("BR1", PAYLOAD)
        await fanout.drain()
    assert task.exception() is None
    assert publisher.attempts == 1
    assert "Fanout publish failed branch_id=BR1" in caplog.text


@pytest.mark.asyncio
async def test_event_bus_publisher_wraps_message():
    bus = AsyncEventBus(default_queue_size=10)
    queue = await bus.subscribe()
    await EventBusFanoutPublisher(bus).publish("BR2", PAYLOAD)
    event = queue.get_nowait()
    assert event == WasteEventPublished(branch_id="BR2", payload=PAYLOAD)
    assert event.to_message() == {"branchId": "BR2", "payload": PAYLOAD}


@pytest.mark.asyncio
async def test_event_bus_drops_oldest_when_full():
    bus = AsyncEventBus(default_queue_size=10)
    queue = await bus.subscribe(maxsize=1)
    assert await bus.publish("first") == 1
    await bus.publish("second")
    assert bus.dropped(queue) == 1
    assert queue.qsize() == 1
    assert queue.get_nowait() == "second"


@pytest.mark.asyncio
async def test_gateway_routes_only_to_matching_branch():
    gateway = BranchWebSocketGateway()
    sydney = FakeWebSocket()
    melbourne = FakeWebSocket()
    await gateway.connect("BR1", sydney)
    await gateway.connect("BR2", melbourne)

    delivered = await gateway.broadcast("BR1", {"hello": 1})
    assert delivered == 1
    assert sydney.accepted is True
    assert sydney.sent == [{"hello": 1}]
    assert melbourne.sent == []


@pytest.mark.asyncio
async def test_gateway_drops_dead_listeners():
    gateway = BranchWebSocketGateway()
    alive = FakeWebSocket()
    dead = FakeWebSocket(fail=True)
    await gateway.register("BR1", alive)
    await gateway.register("BR1", dead)

    assert await gateway.broadcast("BR1", {"n": 1}) == 1
    assert await gateway.listener_count("BR1") == 1

    await gateway.disconnect("BR1", alive)
    assert await gateway.listener_count("BR1") == 0


@pytest.mark.asyncio
async def test_ws_runtime_pushes_bus_events_to_branch_listeners():
    bus = AsyncEventBus(default_queue_size=10)
    gateway = BranchWebSocketGateway()
    runtime = WsRuntime(bus, gateway, queue_size=10)
    listener = FakeWebSocket()
    other = FakeWebSocket()
    await gateway.register("BR1", listener)
    await gateway.register("BR2", other)
    await runtime.start()
    try:
        await EventBusFanoutPublisher(bus).publish("BR1", PAYLOAD)
        for _ in range(50):
            if listener.sent:
                break
            await asyncio.sleep(0.01)
    finally:
        await runtime.stop()

    assert listener.sent == [{"type": "WasteEvent", "branchId": "BR1", "payload": PAYLOAD}]
    assert other.sent == []
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_redis_publisher_sends_json_message():
    client = FakeRedis()
    publisher = RedisFanoutPublisher("redis://unused", "waste-updates", client=client)
    await publisher.publish("BR3", PAYLOAD)

    channel, raw = client.published[0]
    assert channel == "waste-updates"
    assert json.loads(raw) == {"branchId": "BR3", "payload": PAYLOAD}


@pytest.mark.asyncio
async def test_redis_publisher_requires_start():
    publisher = RedisFanoutPublisher("redis://unused", "waste-updates")
    with pytest.raises(RuntimeError):
        await publisher.publish("BR3", PAYLOAD)


@pytest.mark.asyncio
async def test_redis_relay_forwards_valid_messages():
    bus = AsyncEventBus(default_queue_size=10)
    queue = await bus.subscribe()
    relay = RedisFanoutRelay("redis://unused", "waste-updates", bus, client=FakeRedis())

    assert await relay.forward(json.dumps({"branchId": "BR1", "payload": PAYLOAD})) is True
    assert queue.get_nowait() == WasteEventPublished(branch_id="BR1", payload=PAYLOAD)

    assert await relay.forward("not json") is False
    assert await relay.forward(json.dumps({"payload": PAYLOAD})) is False
    assert await relay.forward(None) is False
    assert queue.empty()


@pytest.mark.asyncio
async def test_redis_relay_resubscribes_after_connection_loss(caplog):
    bus = AsyncEventBus(default_queue_size=10)
    queue = await bus.subscribe()
    broken = FakePubSub(error=ConnectionError("redis connection lost"))
    healthy = FakePubSub(
        messages=[
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": json.dumps({"branchId": "BR2", "payload": PAYLOAD})},
        ]
    )
    client = FakeRedis([broken, healthy])
    relay = RedisFanoutRelay("redis://unused", "waste-updates", bus, client=client, retry_min_seconds=0.01)

    with caplog.at_level(logging.ERROR):
        await relay.start()
        event = await asyncio.wait_for(queue.get(), timeout=2)

    assert event == WasteEventPublished(branch_id="BR2", payload=PAYLOAD)
    assert broken.closed
    assert healthy.channels == ["waste-updates"]
    assert "Redis relay subscription lost" in caplog.text

    await relay.stop()
    assert healthy.closed
    assert client.closed


@pytest.mark.asyncio
async def test_redis_relay_stop_closes_client_when_pump_is_failing():
    bus = AsyncEventBus(default_queue_size=10)
    client = FakeRedis([FakePubSub(error=ConnectionError("redis connection lost")) for _ in range(50)])
    relay = RedisFanoutRelay(
        "redis://unused", "waste-updates", bus, client=client, retry_min_seconds=0.001, retry_max_seconds=0.001
    )

    await relay.start()
    await asyncio.sleep(0.02)
    await relay.stop()

    assert client.closed
    await relay.stop()

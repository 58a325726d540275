from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from redis.asyncio import Redis

from waste_tracking.application.ports import EventBusPort
from waste_tracking.domain.events import WasteEventPublished

log = logging.getLogger(__name__)


class EventBusFanoutPublisher:
    def __init__(self, event_bus: EventBusPort) -> None:
        self._event_bus = event_bus

    async def publish(self, branch_id: str, payload: dict[str, Any]) -> None:
        await self._event_bus.publish(WasteEventPublished(branch_id=branch_id, payload=payload))


class RedisFanoutPublisher:
    def __init__(self, url: str, channel: str, client: Redis | None = None) -> None:
        self._url = url
        self._channel = channel
        self._client = client

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, encoding="utf-8", decode_responses=True)
        log.info("Redis fan-out publisher ready channel=%s", self._channel)

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        log.info("Redis fan-out publisher closed")

    async def publish(self, branch_id: str, payload: dict[str, Any]) -> None:
        if self._client is None:
            raise RuntimeError("Redis fan-out publisher has not started")
        message = json.dumps(WasteEventPublished(branch_id=branch_id, payload=payload).to_message())
        receivers = await self._client.publish(self._channel, message)
        log.debug("Redis publish channel=%s branch_id=%s receivers=%s", self._channel, branch_id, receivers)


class RedisFanoutRelay:
    """Subscribes to the shared channel and forwards each message onto the local event bus.

    A dropped subscription is logged and re-established with exponential backoff.
    """

    def __init__(
        self,
        url: str,
        channel: str,
        event_bus: EventBusPort,
        client: Redis | None = None,
        *,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 30.0,
    ) -> None:
        self._url = url
        self._channel = channel
        self._event_bus = event_bus
        self._client = client
        self._retry_min = retry_min_seconds
        self._retry_max = max(retry_min_seconds, retry_max_seconds)
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is not None:
            log.debug("Redis relay start skipped because task already exists")
            return
        if self._client is None:
            self._client = Redis.from_url(self._url, encoding="utf-8", decode_responses=True)
        pubsub = await self._subscribe()
        self._task = asyncio.create_task(self._pump(pubsub), name="redis-fanout-relay")
        log.info("Redis relay subscribed channel=%s", self._channel)

    async def stop(self) -> None:
        task, self._task = self._task, None
        try:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        except Exception:  # noqa: BLE001
            log.exception("Redis relay pump ended with error channel=%s", self._channel)
        finally:
            if self._client is not None:
                client, self._client = self._client, None
                with contextlib.suppress(Exception):
                    await client.aclose()
        log.info("Redis relay stopped")

    async def _subscribe(self):
        if self._client is None:
            raise RuntimeError("Redis relay has no client")
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self._channel)
        return pubsub

    async def _pump(self, pubsub) -> None:
        backoff = self._retry_min
        while True:
            try:
                if pubsub is None:
                    pubsub = await self._subscribe()
                    log.info("Redis relay resubscribed channel=%s", self._channel)
                async for message in pubsub.listen():
                    backoff = self._retry_min
                    if message.get("type") == "message":
                        await self.forward(message.get("data"))
                log.warning("Redis relay stream ended channel=%s retry_in_s=%s", self._channel, backoff)
            except Exception:  # noqa: BLE001
                log.exception("Redis relay subscription lost channel=%s retry_in_s=%s", self._channel, backoff)
            finally:
                if pubsub is not None:
                    with contextlib.suppress(Exception):
                        await pubsub.aclose()
                pubsub = None
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._retry_max)

    async def forward(self, raw: Any) -> bool:
        try:
            decoded = json.loads(raw)
            event = WasteEventPublished.from_message(decoded)
        except (TypeError, ValueError) as exc:
            log.warning("Redis relay dropped invalid message error=%s raw=%r", exc, raw)
            return False
        await self._event_bus.publish(event)
        return True

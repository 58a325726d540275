from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class _Subscription:
    queue: asyncio.Queue[Any]
    dropped: int = 0


class AsyncEventBus:
    """
    In-process fan-out to local consumers such as the WebSocket pump.

    Every subscriber owns a bounded queue. When it is full the oldest message is
    discarded, so a slow consumer never blocks the publisher.
    """

    def __init__(self, default_queue_size: int) -> None:
        self._default_queue_size = default_queue_size
        self._subscriptions: dict[int, _Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Any]:
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize or self._default_queue_size)
        self._subscriptions[id(queue)] = _Subscription(queue=queue)
        log.info("Event bus subscribe subscribers=%s queue_size=%s", len(self._subscriptions), queue.maxsize)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[Any]) -> None:
        subscription = self._subscriptions.pop(id(queue), None)
        if subscription is None:
            return
        log.info(
            "Event bus unsubscribe subscribers=%s dropped_total=%s",
            len(self._subscriptions),
            subscription.dropped,
        )

    def dropped(self, queue: asyncio.Queue[Any]) -> int:
        subscription = self._subscriptions.get(id(queue))
        return subscription.dropped if subscription else 0

    async def publish(self, event: Any) -> int:
        subscriptions = list(self._subscriptions.values())
        overflowed = sum(1 for subscription in subscriptions if not _offer(subscription, event))
        if overflowed:
            log.warning(
                "Event bus overflow event_type=%s subscribers=%s dropped_oldest=%s",
                type(event).__name__,
                len(subscriptions),
                overflowed,
            )
        return len(subscriptions)


def _offer(subscription: _Subscription, event: Any) -> bool:
    queue = subscription.queue
    if not queue.full():
        queue.put_nowait(event)
        return True
    with contextlib.suppress(asyncio.QueueEmpty):
        queue.get_nowait()
    subscription.dropped += 1
    queue.put_nowait(event)
    return False

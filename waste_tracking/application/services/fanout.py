from __future__ import annotations

import asyncio
import logging
from typing import Any

from waste_tracking.application.ports import FanoutPublisherPort

log = logging.getLogger(__name__)


class FanoutDispatcher:
    """
    Fire-and-forget fan-out: at most once, never retried, never raised to the caller.
    """

    def __init__(self, publisher: FanoutPublisherPort) -> None:
        self._publisher = publisher
        self._tasks: set[asyncio.Task[None]] = set()

    def dispatch(self, branch_id: str, payload: dict[str, Any]) -> asyncio.Task[None]:
        task = asyncio.create_task(self._publish(branch_id, payload), name=f"fanout-{branch_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if not self._tasks:
            return
        log.debug("Fanout drain pending=%s", len(self._tasks))
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _publish(self, branch_id: str, payload: dict[str, Any]) -> None:
        try:
            await self._publisher.publish(branch_id, payload)
        except asyncio.CancelledError:
            log.warning("Fanout publish cancelled branch_id=%s bin_id=%s", branch_id, payload.get("binId"))
            raise
        except Exception:  # noqa: BLE001
            log.exception("Fanout publish failed branch_id=%s bin_id=%s", branch_id, payload.get("binId"))
            return
        log.debug("Fanout published branch_id=%s bin_id=%s", branch_id, payload.get("binId"))

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import WebSocket

from waste_tracking.domain.events import WasteEventPublished

log = logging.getLogger(__name__)


class BranchWebSocketGateway:
    """Re-broadcasts fan-out messages only to listeners registered for the message's branch."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._listeners: dict[str, set[WebSocket]] = {}

    async def connect(self, branch_id: str, ws: WebSocket) -> None:
        await ws.accept()
        await self.register(branch_id, ws)

    async def register(self, branch_id: str, ws: WebSocket) -> None:
        async with self._lock:
            self._listeners.setdefault(branch_id, set()).add(ws)
            count = len(self._listeners[branch_id])
        log.info("WS listener registered branch_id=%s listeners=%s", branch_id, count)

    async def disconnect(self, branch_id: str, ws: WebSocket) -> None:
        async with self._lock:
            listeners = self._listeners.get(branch_id)
            if listeners is None:
                return
            listeners.discard(ws)
            if not listeners:
                del self._listeners[branch_id]

    async def listener_count(self, branch_id: str) -> int:
        async with self._lock:
            return len(self._listeners.get(branch_id, ()))

    async def broadcast(self, branch_id: str, payload: dict[str, Any]) -> int:
        async with self._lock:
            targets = list(self._listeners.get(branch_id, ()))
        dead: list[WebSocket] = []
        delivered = 0
        for ws in targets:
            try:
                await ws.send_json(payload)
                delivered += 1
            except Exception:  # noqa: BLE001
                dead.append(ws)
        if dead:
            async with self._lock:
                listeners = self._listeners.get(branch_id)
                if listeners is not None:
                    for ws in dead:
                        listeners.discard(ws)
                    if not listeners:
                        del self._listeners[branch_id]
            log.info("WS dropped dead listeners branch_id=%s count=%s", branch_id, len(dead))
        return delivered

    async def event_pump(self, queue: asyncio.Queue[Any]) -> None:
        while True:
            event = await queue.get()
            if not isinstance(event, WasteEventPublished):
                continue
            await self.broadcast(event.branch_id, {"type": "WasteEvent", **event.to_message()})

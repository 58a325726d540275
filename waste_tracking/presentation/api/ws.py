from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from fastapi import APIRouter, WebSocket

from waste_tracking.application.ports import EventBusPort
from waste_tracking.infrastructure.realtime.ws_server import BranchWebSocketGateway

log = logging.getLogger(__name__)


class WsRuntime:
    """Owns the single bus subscription that feeds branch WebSocket listeners."""

    def __init__(self, event_bus: EventBusPort, gateway: BranchWebSocketGateway, queue_size: int) -> None:
        self._event_bus = event_bus
        self._gateway = gateway
        self._queue_size = queue_size
        self._subscription: tuple[asyncio.Queue[Any], asyncio.Task[None]] | None = None

    @property
    def running(self) -> bool:
        return self._subscription is not None

    async def start(self) -> None:
        if self.running:
            return
        queue = await self._event_bus.subscribe(maxsize=self._queue_size)
        pump = asyncio.create_task(self._gateway.event_pump(queue), name="branch-ws-pump")
        self._subscription = (queue, pump)
        log.info("Branch WS pump started queue_size=%s", self._queue_size)

    async def stop(self) -> None:
        if self._subscription is None:
            return
        queue, pump = self._subscription
        self._subscription = None
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
        await self._event_bus.unsubscribe(queue)
        log.info("Branch WS pump stopped")


def build_ws_router(gateway: BranchWebSocketGateway) -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws/branches/{branch_id}")
    async def branch_feed(ws: WebSocket, branch_id: str) -> None:
        await gateway.connect(branch_id, ws)
        try:
            # Listeners are read-only apart from "ping" keepalives.
            async for text in ws.iter_text():
                if text.strip().lower() == "ping":
                    await ws.send_json({"type": "Pong"})
        finally:
            await gateway.disconnect(branch_id, ws)
            log.debug("Branch listener closed branch_id=%s client=%s", branch_id, ws.client)

    return router

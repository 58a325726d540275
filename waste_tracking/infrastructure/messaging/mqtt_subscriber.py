from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from collections.abc import Callable
from typing import Any

import aiomqtt

from waste_tracking.application.use_cases.ingest_waste import IngestWasteUseCase
from waste_tracking.config import Settings
from waste_tracking.domain.errors import InternalError, WasteTrackingError
from waste_tracking.domain.models.bin import WasteEvent

log = logging.getLogger(__name__)


class MqttIngestSubscriber:
    """
    Feeds scale readings published on the broker into `IngestWasteUseCase`.

    Accepts `{associateBin|binId, currentWeight|rawWeight, eventType, isCleaned, cleanedBy, requestId}`.
    Bad messages are logged and skipped; the subscription survives them.
    """

    def __init__(
        self,
        ingest: IngestWasteUseCase,
        config: Settings,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._ingest = ingest
        self._topic = config.mqtt_topic
        self._qos = config.mqtt_qos
        self._reconnect_seconds = config.mqtt_reconnect_seconds
        self._client_factory = client_factory or _default_client_factory(config)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._consume(), name="mqtt-ingest")
        log.info("MQTT ingest started topic=%s qos=%s", self._topic, self._qos)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        log.info("MQTT ingest stopped topic=%s", self._topic)

    async def _consume(self) -> None:
        while True:
            try:
                async with self._client_factory() as client:
                    await client.subscribe(self._topic, qos=self._qos)
                    log.info("MQTT subscribed topic=%s", self._topic)
                    async for message in client.messages:
                        await self.handle(message.payload)
                log.warning("MQTT message stream ended topic=%s", self._topic)
            except aiomqtt.MqttError as exc:
                log.warning("MQTT connection lost topic=%s error=%s retry_in_s=%s", self._topic, exc, self._reconnect_seconds)
            except Exception:  # noqa: BLE001
                log.exception("MQTT consumer failed topic=%s retry_in_s=%s", self._topic, self._reconnect_seconds)
            await asyncio.sleep(self._reconnect_seconds)

    async def handle(self, raw: Any) -> WasteEvent | None:
        fields = parse_reading(raw)
        if fields is None:
            return None
        try:
            event = await self._ingest.ingest(
                fields["bin_id"],
                fields["raw_weight"],
                fields["event_type"],
                fields["is_cleaned"],
                fields["cleaned_by"],
                request_id=fields["request_id"],
            )
        except InternalError:
            log.exception("MQTT ingest failed bin_id=%s", fields["bin_id"])
            return None
        except WasteTrackingError as exc:
            log.warning("MQTT reading rejected bin_id=%s status=%s detail=%s", fields["bin_id"], exc.status_code, exc)
            return None
        log.debug("MQTT reading stored event_id=%s bin_id=%s", event.event_id, event.bin_id)
        return event


def parse_reading(raw: Any) -> dict[str, Any] | None:
    """Decode one broker payload into ingest arguments, or None when it is unusable."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        log.warning("MQTT invalid JSON raw=%r", raw)
        return None
    if not isinstance(message, dict):
        log.warning("MQTT payload is not an object raw=%r", raw)
        return None

    bin_id = message.get("associateBin", message.get("binId"))
    weight = message.get("currentWeight", message.get("rawWeight"))
    event_type = message.get("eventType", "disposal")
    if (
        not isinstance(bin_id, str)
        or isinstance(weight, bool)
        or not isinstance(weight, (int, float))
        or not isinstance(event_type, str)
    ):
        log.warning("MQTT missing or invalid fields message=%s", message)
        return None

    request_id = message.get("requestId")
    return {
        "bin_id": bin_id,
        "raw_weight": weight,
        "event_type": event_type,
        "is_cleaned": bool(message.get("isCleaned", False)),
        "cleaned_by": message.get("cleanedBy") or None,
        "request_id": request_id if isinstance(request_id, str) else None,
    }


def _default_client_factory(config: Settings) -> Callable[[], aiomqtt.Client]:
    identifier = config.mqtt_client_id.strip() or f"waste-tracking-{uuid.uuid4().hex[:12]}"

    def factory() -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=config.mqtt_host,
            port=config.mqtt_port,
            username=config.mqtt_username or None,
            password=config.mqtt_password or None,
            identifier=identifier,
            clean_session=False,
        )

    return factory

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from waste_tracking.application.ports import ClockPort, FanoutPublisherPort
from waste_tracking.application.services.aggregation import TemporalAggregationEngine
from waste_tracking.application.services.dashboard import DashboardQueryService
from waste_tracking.application.services.fanout import FanoutDispatcher
from waste_tracking.application.use_cases.ingest_waste import IngestWasteUseCase
from waste_tracking.application.use_cases.resolve_branches import OrgHierarchyResolver
from waste_tracking.config import Settings, settings as default_settings
from waste_tracking.infrastructure.memory.repos import (
    InMemoryBinRepo,
    InMemoryBranchRepo,
    InMemoryCleanerRepo,
    InMemoryCompanyRepo,
    InMemoryDatabase,
    InMemoryOrgUnitRepo,
    InMemoryWasteEventRepo,
)
from waste_tracking.infrastructure.messaging.event_bus import AsyncEventBus
from waste_tracking.infrastructure.messaging.mqtt_subscriber import MqttIngestSubscriber
from waste_tracking.infrastructure.messaging.publishers import (
    EventBusFanoutPublisher,
    RedisFanoutPublisher,
    RedisFanoutRelay,
)
from waste_tracking.infrastructure.realtime.ws_server import BranchWebSocketGateway
from waste_tracking.infrastructure.sqlserver.connection import SQLServerConnection
from waste_tracking.infrastructure.sqlserver.repos import (
    SqlBinRepo,
    SqlBranchRepo,
    SqlCleanerRepo,
    SqlCompanyRepo,
    SqlOrgUnitRepo,
    SqlWasteEventRepo,
)
from waste_tracking.presentation.api.ws import WsRuntime

log = logging.getLogger(__name__)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    event_bus: AsyncEventBus
    gateway: BranchWebSocketGateway
    fanout: FanoutDispatcher
    ingest: IngestWasteUseCase
    dashboard: DashboardQueryService
    ws_runtime: WsRuntime
    connection: SQLServerConnection | None = None
    redis_publisher: RedisFanoutPublisher | None = None
    redis_relay: RedisFanoutRelay | None = None
    mqtt_subscriber: MqttIngestSubscriber | None = None
    _started: bool = field(default=False, init=False)

    async def start(self) -> None:
        if self._started:
            log.debug("Runtime start skipped because it is already running")
            return
        try:
            if self.connection is not None:
                await self.connection.start()
            if self.redis_publisher is not None:
                await self.redis_publisher.start()
            await self.ws_runtime.start()
            if self.redis_relay is not None:
                await self.redis_relay.start()
            if self.mqtt_subscriber is not None:
                await self.mqtt_subscriber.start()
        except Exception:
            log.exception("Runtime start failed; stopping components already started")
            await self._shutdown()
            raise
        self._started = True
        log.info(
            "Runtime started storage=%s fanout=%s mqtt=%s",
            self.settings.storage_backend,
            self.settings.fanout_backend,
            self.mqtt_subscriber is not None,
        )

    async def stop(self) -> None:
        if not self._started:
            log.debug("Runtime stop skipped because it is not running")
            return
        log.info("Runtime stopping pending_fanout=%s", self.fanout.pending)
        await self._shutdown()
        self._started = False
        log.info("Runtime stopped")

    async def _shutdown(self) -> None:
        # Every component stop is a no-op when that component never started.
        steps = [
            ("mqtt", self.mqtt_subscriber.stop if self.mqtt_subscriber else None),
            ("fanout", self.fanout.drain),
            ("redis_relay", self.redis_relay.stop if self.redis_relay else None),
            ("ws", self.ws_runtime.stop),
            ("redis_publisher", self.redis_publisher.close if self.redis_publisher else None),
            ("sql", self.connection.close if self.connection else None),
        ]
        for name, step in steps:
            if step is None:
                continue
            try:
                await step()
            except Exception:  # noqa: BLE001
                log.exception("Runtime component stop failed component=%s", name)


def build_runtime(
    config: Settings | None = None,
    *,
    db: InMemoryDatabase | None = None,
    clock: ClockPort | None = None,
    publisher: FanoutPublisherPort | None = None,
) -> Runtime:
    cfg = config or default_settings
    clock = clock or SystemClock()
    event_bus = AsyncEventBus(default_queue_size=cfg.event_queue_size)
    gateway = BranchWebSocketGateway()

    connection: SQLServerConnection | None = None
    repos: dict[str, Any]
    if cfg.storage_backend == "sqlserver":
        connection = SQLServerConnection(cfg)
        repos = {
            "bins": SqlBinRepo(connection),
            "events": SqlWasteEventRepo(connection),
            "branches": SqlBranchRepo(connection),
            "org_units": SqlOrgUnitRepo(connection),
            "cleaners": SqlCleanerRepo(connection),
            "companies": SqlCompanyRepo(connection),
        }
    else:
        db = db if db is not None else InMemoryDatabase()
        repos = {
            "bins": InMemoryBinRepo(db),
            "events": InMemoryWasteEventRepo(db),
            "branches": InMemoryBranchRepo(db),
            "org_units": InMemoryOrgUnitRepo(db),
            "cleaners": InMemoryCleanerRepo(db),
            "companies": InMemoryCompanyRepo(db),
        }

    redis_publisher: RedisFanoutPublisher | None = None
    redis_relay: RedisFanoutRelay | None = None
    if publisher is None:
        if cfg.fanout_backend == "redis":
            redis_publisher = RedisFanoutPublisher(cfg.redis_url, cfg.fanout_channel)
            redis_relay = RedisFanoutRelay(cfg.redis_url, cfg.fanout_channel, event_bus)
            publisher = redis_publisher
        else:
            publisher = EventBusFanoutPublisher(event_bus)
    fanout = FanoutDispatcher(publisher)

    resolver = OrgHierarchyResolver(repos["branches"], repos["org_units"])
    engine = TemporalAggregationEngine(
        repos["events"],
        repos["bins"],
        not_emptied_start_hour=cfg.not_emptied_check_start_hour,
        not_emptied_end_hour=cfg.not_emptied_check_end_hour,
    )
    ingest = IngestWasteUseCase(repos["bins"], repos["events"], repos["cleaners"], fanout, clock)
    dashboard = DashboardQueryService(
        resolver,
        engine,
        repos["branches"],
        repos["companies"],
        repos["events"],
        clock,
        leaderboard_fallback_day=cfg.leaderboard_fallback_day,
        activity_feed_days=cfg.activity_feed_days,
        activity_feed_limit=cfg.activity_feed_limit,
    )
    mqtt_subscriber = MqttIngestSubscriber(ingest, cfg) if cfg.mqtt_enabled else None
    log.info(
        "Runtime built storage=%s fanout=%s mqtt=%s",
        cfg.storage_backend,
        cfg.fanout_backend,
        cfg.mqtt_enabled,
    )
    return Runtime(
        settings=cfg,
        event_bus=event_bus,
        gateway=gateway,
        fanout=fanout,
        ingest=ingest,
        dashboard=dashboard,
        ws_runtime=WsRuntime(event_bus, gateway, cfg.ws_queue_size),
        connection=connection,
        redis_publisher=redis_publisher,
        redis_relay=redis_relay,
        mqtt_subscriber=mqtt_subscriber,
    )

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from waste_tracking.application.services.aggregation import TemporalAggregationEngine
from waste_tracking.application.services.dashboard import DashboardQueryService
from waste_tracking.application.services.fanout import FanoutDispatcher
from waste_tracking.application.use_cases.ingest_waste import IngestWasteUseCase
from waste_tracking.application.use_cases.resolve_branches import OrgHierarchyResolver
from waste_tracking.domain.models.bin import Bin, BinType, EventType, WasteEvent
from waste_tracking.domain.models.org import Branch, Cleaner, Company, OrgUnit
from waste_tracking.infrastructure.memory.repos import (
    InMemoryBinRepo,
    InMemoryBranchRepo,
    InMemoryCleanerRepo,
    InMemoryCompanyRepo,
    InMemoryDatabase,
    InMemoryOrgUnitRepo,
    InMemoryWasteEventRepo,
)

# Wednesday
NOW = datetime(2026, 10, 14, 14, 30, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, current: datetime = NOW) -> None:
        self.current = current

    def now(self) -> datetime:
        return self.current


class RecordingPublisher:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, branch_id: str, payload: dict[str, Any]) -> None:
        self.calls.append((branch_id, payload))


class FailingPublisher:
    def __init__(self) -> None:
        self.attempts = 0

    async def publish(self, branch_id: str, payload: dict[str, Any]) -> None:
        self.attempts += 1
        raise ConnectionError("broker unavailable")


def seed(db: InMemoryDatabase) -> InMemoryDatabase:
    db.add_company(Company("CO1", "Acme"))
    db.add_company(Company("CO2", "Globex"))

    db.add_branch(Branch("BR1", "CO1", "Sydney CBD", city="Sydney", country="Australia", subdivision="NSW"))
    db.add_branch(Branch("BR2", "CO1", "Melbourne Docklands", city="Melbourne", country="Australia", subdivision="VIC"))
    db.add_branch(Branch("BR3", "CO2", "Auckland", city="Auckland", country="New Zealand", subdivision="AUK"))
    db.add_branch(Branch("BR4", "CO1", "Sydney Old", city="Sydney", country="Australia", subdivision="NSW", is_deleted=True))

    db.add_org_unit(OrgUnit("OU-SYD", "Sydney", "City", "CO1"))
    db.add_org_unit(OrgUnit("OU-AU", "Australia", "Country", "CO1"))
    db.add_org_unit(OrgUnit("OU-VIC", "VIC", "State", "CO1"))
    db.add_org_unit(OrgUnit("OU-ACME", "Acme", "Company", "CO1"))
    db.add_org_unit(OrgUnit("OU-MEL", "Melbourne Docklands", "Branch", "CO1", parent_id="OU-VIC", branch_id="BR2"))
    db.add_org_unit(OrgUnit("OU-BROKEN", "Orphan", "Branch", "CO1"))

    db.add_bin(Bin("B1", BinType.GENERAL_WASTE, 120.0, "BR1"))
    db.add_bin(Bin("B2", BinType.COMMINGLED, 240.0, "BR1"))
    db.add_bin(Bin("B3", BinType.ORGANICS, 120.0, "BR1"))
    db.add_bin(Bin("B4", BinType.PAPER_CARDBOARD, 240.0, "BR2"))
    db.add_bin(Bin("B5", BinType.GENERAL_WASTE, 120.0, "BR3"))

    db.add_cleaner(Cleaner("C1", "Jamie", code="JM01"))
    return db


class EventFactory:
    """Appends disposal events straight into the store with explicit timestamps."""

    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db
        self._ids = itertools.count(1)

    def add(
        self,
        bin_id: str,
        net_weight: float,
        at: datetime,
        event_type: EventType = EventType.DISPOSAL,
        event_id: str | None = None,
    ) -> WasteEvent:
        return self._db.add_event(
            WasteEvent(
                event_id=event_id or f"evt-{next(self._ids):04d}",
                bin_id=bin_id,
                net_weight=net_weight,
                event_type=event_type,
                is_cleaned=event_type is EventType.CLEANING,
                cleaned_by="C1" if event_type is EventType.CLEANING else None,
                created_at=at,
            )
        )


def at_today(hour: int, minute: int = 0) -> datetime:
    return NOW.replace(hour=hour, minute=minute)


def at_days_ago(days: int, hour: int, minute: int = 0) -> datetime:
    return at_today(hour, minute) - timedelta(days=days)


@pytest.fixture
def db() -> InMemoryDatabase:
    return seed(InMemoryDatabase())


@pytest.fixture
def events(db: InMemoryDatabase) -> EventFactory:
    return EventFactory(db)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def ingest(db: InMemoryDatabase, publisher: RecordingPublisher, clock: FixedClock) -> IngestWasteUseCase:
    ids = itertools.count(1)
    return IngestWasteUseCase(
        InMemoryBinRepo(db),
        InMemoryWasteEventRepo(db),
        InMemoryCleanerRepo(db),
        FanoutDispatcher(publisher),
        clock,
        id_factory=lambda: f"evt-{next(ids):04d}",
    )


@pytest.fixture
def resolver(db: InMemoryDatabase) -> OrgHierarchyResolver:
    return OrgHierarchyResolver(InMemoryBranchRepo(db), InMemoryOrgUnitRepo(db))


@pytest.fixture
def engine(db: InMemoryDatabase) -> TemporalAggregationEngine:
    return TemporalAggregationEngine(
        InMemoryWasteEventRepo(db),
        InMemoryBinRepo(db),
        not_emptied_start_hour=10,
        not_emptied_end_hour=11,
    )


@pytest.fixture
def dashboard(
    db: InMemoryDatabase,
    resolver: OrgHierarchyResolver,
    engine: TemporalAggregationEngine,
    clock: FixedClock,
) -> DashboardQueryService:
    return DashboardQueryService(
        resolver,
        engine,
        InMemoryBranchRepo(db),
        InMemoryCompanyRepo(db),
        InMemoryWasteEventRepo(db),
        clock,
        leaderboard_fallback_day=7,
        activity_feed_days=7,
        activity_feed_limit=500,
    )

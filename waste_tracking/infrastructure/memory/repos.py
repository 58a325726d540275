from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from dataclasses import dataclass, field

from waste_tracking.domain.errors import NotFoundError
from waste_tracking.domain.models.bin import Bin, WasteEvent
from waste_tracking.domain.models.org import Branch, Cleaner, Company, OrgUnit
from waste_tracking.domain.models.reading import BinReading, Granularity
from waste_tracking.domain.rules.periods import TimeWindow, as_utc
from waste_tracking.domain.rules.readings import select_latest_per_bucket

log = logging.getLogger(__name__)


@dataclass(slots=True)
class InMemoryDatabase:
    bins: dict[str, Bin] = field(default_factory=dict)
    events: list[WasteEvent] = field(default_factory=list)
    branches: dict[str, Branch] = field(default_factory=dict)
    org_units: dict[str, OrgUnit] = field(default_factory=dict)
    cleaners: dict[str, Cleaner] = field(default_factory=dict)
    companies: dict[str, Company] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def add_company(self, company: Company) -> Company:
        self.companies[company.company_id] = company
        return company

    def add_branch(self, branch: Branch) -> Branch:
        self.branches[branch.branch_id] = branch
        return branch

    def add_org_unit(self, org_unit: OrgUnit) -> OrgUnit:
        self.org_units[org_unit.org_unit_id] = org_unit
        return org_unit

    def add_bin(self, bin_: Bin) -> Bin:
        self.bins[bin_.bin_id] = bin_
        return bin_

    def add_cleaner(self, cleaner: Cleaner) -> Cleaner:
        self.cleaners[cleaner.cleaner_id] = cleaner
        return cleaner

    def add_event(self, event: WasteEvent) -> WasteEvent:
        self.events.append(event)
        return event


class InMemoryBinRepo:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def get(self, bin_id: str) -> Bin | None:
        async with self._db.lock:
            bin_ = self._db.bins.get(bin_id)
            return bin_.clone() if bin_ else None

    async def update_tare(self, bin_id: str, tare_weight: float) -> Bin:
        if tare_weight < 0:
            raise ValueError("tare_weight must be >= 0")
        async with self._db.lock:
            bin_ = self._db.bins.get(bin_id)
            if bin_ is None:
                raise NotFoundError(f"Bin {bin_id} not found")
            bin_.tare_weight = tare_weight
            bin_.current_weight = 0.0
            return bin_.clone()

    async def list_by_branches(self, branch_ids: Collection[str]) -> list[Bin]:
        async with self._db.lock:
            return [bin_.clone() for bin_ in self._db.bins.values() if bin_.branch_id in branch_ids]

    async def count_by_branches(self, branch_ids: Collection[str]) -> int:
        return len(await self.list_by_branches(branch_ids))


class InMemoryWasteEventRepo:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def insert(self, event: WasteEvent) -> WasteEvent:
        async with self._db.lock:
            self._db.events.append(event)
            count = len(self._db.events)
        log.debug("In-memory event insert event_id=%s total_events=%s", event.event_id, count)
        return event

    async def find_by_request_id(self, request_id: str) -> WasteEvent | None:
        async with self._db.lock:
            for event in self._db.events:
                if event.request_id == request_id:
                    return event
        return None

    async def latest_readings(
        self,
        branch_ids: Collection[str],
        window: TimeWindow,
        granularity: Granularity,
    ) -> list[BinReading]:
        async with self._db.lock:
            events = list(self._db.events)
            bins = {bin_id: bin_.clone() for bin_id, bin_ in self._db.bins.items()}
        return select_latest_per_bucket(events, bins, set(branch_ids), window, granularity)

    async def latest_for_bin(self, bin_id: str, window: TimeWindow) -> WasteEvent | None:
        async with self._db.lock:
            matches = [
                event
                for event in self._db.events
                if event.bin_id == bin_id and window.contains(as_utc(event.created_at))
            ]
        if not matches:
            return None
        return max(matches, key=lambda event: (as_utc(event.created_at), event.event_id))

    async def list_events(
        self,
        branch_ids: Collection[str],
        window: TimeWindow,
        limit: int,
    ) -> list[WasteEvent]:
        async with self._db.lock:
            branch_by_bin = {bin_id: bin_.branch_id for bin_id, bin_ in self._db.bins.items()}
            rows = [
                event
                for event in self._db.events
                if branch_by_bin.get(event.bin_id) in branch_ids and window.contains(as_utc(event.created_at))
            ]
        rows.sort(key=lambda event: (as_utc(event.created_at), event.event_id))
        return rows[:limit]


class InMemoryBranchRepo:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def get(self, branch_id: str) -> Branch | None:
        async with self._db.lock:
            return self._db.branches.get(branch_id)

    async def get_many(self, branch_ids: Collection[str]) -> list[Branch]:
        async with self._db.lock:
            return [self._db.branches[branch_id] for branch_id in branch_ids if branch_id in self._db.branches]

    async def list_active(
        self,
        *,
        company_id: str | None = None,
        city: str | None = None,
        country: str | None = None,
        subdivision: str | None = None,
    ) -> list[Branch]:
        async with self._db.lock:
            branches = list(self._db.branches.values())
        out: list[Branch] = []
        for branch in branches:
            if branch.is_deleted:
                continue
            if company_id is not None and branch.company_id != company_id:
                continue
            if city is not None and branch.city != city:
                continue
            if country is not None and branch.country != country:
                continue
            if subdivision is not None and branch.subdivision != subdivision:
                continue
            out.append(branch)
        return out


class InMemoryOrgUnitRepo:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def get(self, org_unit_id: str) -> OrgUnit | None:
        async with self._db.lock:
            return self._db.org_units.get(org_unit_id)


class InMemoryCleanerRepo:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def get(self, cleaner_id: str) -> Cleaner | None:
        async with self._db.lock:
            return self._db.cleaners.get(cleaner_id)


class InMemoryCompanyRepo:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def get_many(self, company_ids: Collection[str]) -> list[Company]:
        async with self._db.lock:
            return [self._db.companies[company_id] for company_id in company_ids if company_id in self._db.companies]

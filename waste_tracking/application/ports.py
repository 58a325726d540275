from __future__ import annotations

import asyncio
from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol

from waste_tracking.domain.models.bin import Bin, WasteEvent
from waste_tracking.domain.models.org import Branch, Cleaner, Company, OrgUnit
from waste_tracking.domain.models.reading import BinReading, Granularity
from waste_tracking.domain.rules.periods import TimeWindow


class ClockPort(Protocol):
    def now(self) -> datetime: ...


class EventBusPort(Protocol):
    async def publish(self, event: Any) -> int: ...

    async def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Any]: ...

    async def unsubscribe(self, queue: asyncio.Queue[Any]) -> None: ...


class FanoutPublisherPort(Protocol):
    async def publish(self, branch_id: str, payload: dict[str, Any]) -> None: ...


class BinRepoPort(Protocol):
    async def get(self, bin_id: str) -> Bin | None: ...

    async def update_tare(self, bin_id: str, tare_weight: float) -> Bin: ...

    async def list_by_branches(self, branch_ids: Collection[str]) -> list[Bin]: ...

    async def count_by_branches(self, branch_ids: Collection[str]) -> int: ...


class WasteEventRepoPort(Protocol):
    async def insert(self, event: WasteEvent) -> WasteEvent: ...

    async def find_by_request_id(self, request_id: str) -> WasteEvent | None: ...

    async def latest_readings(
        self,
        branch_ids: Collection[str],
        window: TimeWindow,
        granularity: Granularity,
    ) -> list[BinReading]: ...

    async def latest_for_bin(self, bin_id: str, window: TimeWindow) -> WasteEvent | None: ...

    async def list_events(
        self,
        branch_ids: Collection[str],
        window: TimeWindow,
        limit: int,
    ) -> list[WasteEvent]: ...


class BranchRepoPort(Protocol):
    async def get(self, branch_id: str) -> Branch | None: ...

    async def get_many(self, branch_ids: Collection[str]) -> list[Branch]: ...

    async def list_active(
        self,
        *,
        company_id: str | None = None,
        city: str | None = None,
        country: str | None = None,
        subdivision: str | None = None,
    ) -> list[Branch]: ...


class OrgUnitRepoPort(Protocol):
    async def get(self, org_unit_id: str) -> OrgUnit | None: ...


class CleanerRepoPort(Protocol):
    async def get(self, cleaner_id: str) -> Cleaner | None: ...


class CompanyRepoPort(Protocol):
    async def get_many(self, company_ids: Collection[str]) -> list[Company]: ...

from __future__ import annotations

import logging
import time
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from waste_tracking.application.ports import BinRepoPort, WasteEventRepoPort
from waste_tracking.domain.models.reading import BinReading, Granularity
from waste_tracking.domain.rules.metrics import (
    LeaderboardEntity,
    LeaderboardRow,
    LeaderboardView,
    WasteTotals,
    disposition_buckets,
    flag_not_emptied,
    pivot_by_bin_type,
    rank_leaderboard,
    summarize,
    trend_percent,
)
from waste_tracking.domain.rules.periods import (
    DateFilter,
    TimeWindow,
    as_utc,
    current_window,
    previous_window,
    trailing_days_window,
    utc_day_range,
)
from waste_tracking.domain.rules.readings import latest_weight_by_bin

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class OverviewMetrics:
    total_bins: int
    current: WasteTotals
    previous: WasteTotals

    @classmethod
    def empty(cls) -> "OverviewMetrics":
        return cls(total_bins=0, current=WasteTotals(), previous=WasteTotals())

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalBins": self.total_bins,
            "totalWaste": round(self.current.total, 3),
            "divertedWaste": round(self.current.diverted, 3),
            "recycledWaste": round(self.current.recycled, 3),
            "diversionRate": self.current.diversion_rate,
            "recyclingRate": self.current.recycling_rate,
            "totalWasteTrend": trend_percent(self.current.total, self.previous.total),
            "diversionTrend": trend_percent(self.current.diverted, self.previous.diverted),
        }


@dataclass(slots=True, frozen=True)
class BucketPlan:
    window: TimeWindow
    granularity: Granularity


class TemporalAggregationEngine:
    def __init__(
        self,
        events: WasteEventRepoPort,
        bins: BinRepoPort,
        *,
        not_emptied_start_hour: int,
        not_emptied_end_hour: int,
    ) -> None:
        self._events = events
        self._bins = bins
        self._check_start_hour = not_emptied_start_hour
        self._check_end_hour = not_emptied_end_hour

    async def latest_per_bin_per_day(self, branch_ids: Collection[str], window: TimeWindow) -> list[BinReading]:
        return await self._latest(branch_ids, window, Granularity.DAY)

    async def latest_per_bin_per_hour(self, branch_ids: Collection[str], window: TimeWindow) -> list[BinReading]:
        return await self._latest(branch_ids, window, Granularity.HOUR)

    async def totals(self, branch_ids: Collection[str], window: TimeWindow) -> WasteTotals:
        return summarize(await self.latest_per_bin_per_day(branch_ids, window))

    async def overview(self, branch_ids: Collection[str], date_filter: DateFilter, now: datetime) -> OverviewMetrics:
        if not branch_ids:
            return OverviewMetrics.empty()
        current = await self.totals(branch_ids, current_window(date_filter, now))
        previous = await self.totals(branch_ids, previous_window(date_filter, now))
        total_bins = await self._bins.count_by_branches(branch_ids)
        return OverviewMetrics(total_bins=total_bins, current=current, previous=previous)

    def plan_buckets(self, date_filter: DateFilter, now: datetime, zoom_date: date | None = None) -> BucketPlan:
        if zoom_date is not None:
            return BucketPlan(window=utc_day_range(zoom_date), granularity=Granularity.HOUR)
        if date_filter is DateFilter.TODAY:
            return BucketPlan(window=utc_day_range(now), granularity=Granularity.HOUR)
        return BucketPlan(window=current_window(date_filter, now), granularity=Granularity.DAY)

    async def bucketed_readings(
        self,
        branch_ids: Collection[str],
        date_filter: DateFilter,
        now: datetime,
        zoom_date: date | None = None,
    ) -> list[BinReading]:
        plan = self.plan_buckets(date_filter, now, zoom_date)
        if plan.granularity is Granularity.HOUR:
            return await self.latest_per_bin_per_hour(branch_ids, plan.window)
        return await self.latest_per_bin_per_day(branch_ids, plan.window)

    async def time_series(
        self,
        branch_ids: Collection[str],
        date_filter: DateFilter,
        now: datetime,
        zoom_date: date | None = None,
    ) -> list[dict[str, Any]]:
        return pivot_by_bin_type(await self.bucketed_readings(branch_ids, date_filter, now, zoom_date))

    async def disposition(
        self,
        branch_ids: Collection[str],
        date_filter: DateFilter,
        now: datetime,
        zoom_date: date | None = None,
    ) -> list[dict[str, Any]]:
        return disposition_buckets(await self.bucketed_readings(branch_ids, date_filter, now, zoom_date))

    async def leaderboard(
        self,
        entities: Sequence[LeaderboardEntity],
        window: TimeWindow,
        view: LeaderboardView,
    ) -> list[LeaderboardRow]:
        branch_ids = {branch_id for entity in entities for branch_id in entity.branch_ids}
        readings = await self.latest_per_bin_per_day(branch_ids, window)
        rows = rank_leaderboard(entities, readings, view)
        log.debug("Leaderboard ranked entities=%s readings=%s view=%s", len(rows), len(readings), view.value)
        return rows

    def in_not_emptied_window(self, now: datetime) -> bool:
        return self._check_start_hour <= as_utc(now).hour < self._check_end_hour

    async def bin_status(self, branch_id: str, now: datetime) -> list[dict[str, Any]]:
        bins = await self._bins.list_by_branches({branch_id})
        today = await self.latest_per_bin_per_day({branch_id}, utc_day_range(now))
        today_by_bin = latest_weight_by_bin(today)
        flags: dict[str, bool] = {}
        if self.in_not_emptied_window(now):
            yesterday = await self.latest_per_bin_per_day({branch_id}, utc_day_range(as_utc(now) - timedelta(days=1)))
            flags = flag_not_emptied(today_by_bin, latest_weight_by_bin(yesterday))

        out: list[dict[str, Any]] = []
        for bin_ in sorted(bins, key=lambda item: (item.bin_type.value, item.bin_id)):
            row: dict[str, Any] = {
                "binId": bin_.bin_id,
                "binType": bin_.bin_type.value,
                "capacity": bin_.capacity,
                "latestWeight": today_by_bin.get(bin_.bin_id, 0.0),
            }
            if bin_.bin_id in flags:
                row["notEmptied"] = flags[bin_.bin_id]
            out.append(row)
        return out

    async def bin_history(self, branch_id: str, now: datetime, days: int) -> list[dict[str, Any]]:
        readings = await self.latest_per_bin_per_day({branch_id}, trailing_days_window(now, days))
        series: dict[str, dict[str, Any]] = {}
        for reading in readings:
            entry = series.setdefault(
                reading.bin_id,
                {"binId": reading.bin_id, "binType": reading.bin_type.value, "data": []},
            )
            entry["data"].append({"date": reading.day.isoformat(), "weight": reading.weight})
        return sorted(series.values(), key=lambda item: (item["binType"], item["binId"]))

    async def _latest(
        self,
        branch_ids: Collection[str],
        window: TimeWindow,
        granularity: Granularity,
    ) -> list[BinReading]:
        if not branch_ids:
            return []
        started_at = time.perf_counter()
        readings = await self._events.latest_readings(branch_ids, window, granularity)
        elapsed_ms = int((time.perf_counter() - started_at) * 1000)
        log.debug(
            "Latest readings branches=%s granularity=%s start=%s end=%s rows=%s elapsed_ms=%s",
            len(branch_ids),
            granularity.value,
            window.start.isoformat(),
            window.end.isoformat(),
            len(readings),
            elapsed_ms,
        )
        return readings

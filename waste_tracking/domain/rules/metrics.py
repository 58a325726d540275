from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from waste_tracking.domain.models.bin import BinType
from waste_tracking.domain.models.reading import BinReading


class LeaderboardView(StrEnum):
    DIVERSION = "diversion"
    TOTAL = "total"


@dataclass(slots=True, frozen=True)
class WasteTotals:
    total: float = 0.0
    diverted: float = 0.0
    recycled: float = 0.0

    @property
    def landfill(self) -> float:
        return max(0.0, self.total - self.diverted)

    @property
    def diversion_rate(self) -> float:
        return percentage(self.diverted, self.total)

    @property
    def recycling_rate(self) -> float:
        return percentage(self.recycled, self.total)


@dataclass(slots=True, frozen=True)
class LeaderboardEntity:
    entity_id: str
    name: str
    branch_ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(slots=True, frozen=True)
class LeaderboardRow:
    rank: int
    entity_id: str
    name: str
    totals: WasteTotals

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "id": self.entity_id,
            "name": self.name,
            "totalWaste": round(self.totals.total, 3),
            "divertedWaste": round(self.totals.diverted, 3),
            "diversionPercentage": self.totals.diversion_rate,
        }


def percentage(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


def trend_percent(current: float, previous: float) -> float:
    if previous > 0:
        return round((current - previous) / previous * 100, 2)
    return 100.0 if current > 0 else 0.0


def summarize(readings: Iterable[BinReading]) -> WasteTotals:
    total = 0.0
    diverted = 0.0
    recycled = 0.0
    for reading in readings:
        total += reading.weight
        if reading.bin_type.is_diverted:
            diverted += reading.weight
        if reading.bin_type.is_recycled:
            recycled += reading.weight
    return WasteTotals(total=total, diverted=diverted, recycled=recycled)


def pivot_by_bin_type(readings: Iterable[BinReading]) -> list[dict[str, Any]]:
    buckets: dict[str | int, dict[str, float]] = {}
    for reading in readings:
        data = buckets.setdefault(reading.bucket, {})
        key = reading.bin_type.value
        data[key] = data.get(key, 0.0) + reading.weight
    return [{"time": time_key, "data": buckets[time_key]} for time_key in sorted(buckets, key=_bucket_sort_key)]


def disposition_buckets(readings: Iterable[BinReading]) -> list[dict[str, Any]]:
    buckets: dict[str | int, list[float]] = {}
    for reading in readings:
        landfill_diverted = buckets.setdefault(reading.bucket, [0.0, 0.0])
        if reading.bin_type is BinType.GENERAL_WASTE:
            landfill_diverted[0] += reading.weight
        else:
            landfill_diverted[1] += reading.weight
    return [
        {"time": time_key, "landfillWaste": values[0], "divertedWaste": values[1]}
        for time_key, values in sorted(buckets.items(), key=lambda item: _bucket_sort_key(item[0]))
    ]


def rank_leaderboard(
    entities: Sequence[LeaderboardEntity],
    readings: Iterable[BinReading],
    view: LeaderboardView = LeaderboardView.DIVERSION,
) -> list[LeaderboardRow]:
    owner_by_branch: dict[str, int] = {}
    for index, entity in enumerate(entities):
        for branch_id in entity.branch_ids:
            owner_by_branch.setdefault(branch_id, index)

    grouped: dict[int, list[BinReading]] = {index: [] for index in range(len(entities))}
    for reading in readings:
        index = owner_by_branch.get(reading.branch_id)
        if index is not None:
            grouped[index].append(reading)

    scored = [(entity, summarize(grouped[index])) for index, entity in enumerate(entities)]
    if view is LeaderboardView.TOTAL:
        scored.sort(key=lambda item: item[1].total, reverse=True)
    else:
        scored.sort(key=lambda item: item[1].diversion_rate, reverse=True)
    return [
        LeaderboardRow(rank=position, entity_id=entity.entity_id, name=entity.name, totals=totals)
        for position, (entity, totals) in enumerate(scored, start=1)
    ]


def flag_not_emptied(today: Mapping[str, float], yesterday: Mapping[str, float]) -> dict[str, bool]:
    # Advisory only: exact equality of two measured weights.
    return {
        bin_id: bin_id in yesterday and weight == yesterday[bin_id]
        for bin_id, weight in today.items()
    }


def _bucket_sort_key(value: str | int) -> tuple[int, str]:
    if isinstance(value, int):
        return value, ""
    return 0, value

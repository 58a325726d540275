from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from datetime import datetime

from waste_tracking.domain.models.bin import Bin, WasteEvent
from waste_tracking.domain.models.reading import BinReading, Granularity
from waste_tracking.domain.rules.periods import TimeWindow, as_utc


def bucket_of(created_at: datetime, granularity: Granularity) -> str | int:
    moment = as_utc(created_at)
    if granularity is Granularity.HOUR:
        return moment.hour
    return moment.date().isoformat()


def select_latest_per_bucket(
    events: Iterable[WasteEvent],
    bins: Mapping[str, Bin],
    branch_ids: Collection[str],
    window: TimeWindow,
    granularity: Granularity = Granularity.DAY,
) -> list[BinReading]:
    """
    Last write wins per (bin, UTC day[, hour]).
    Disposal and cleaning events both take part; equal timestamps fall back to the larger event id.
    """
    latest: dict[tuple[str, object, object], WasteEvent] = {}
    for event in events:
        created_at = as_utc(event.created_at)
        if not window.contains(created_at):
            continue
        bin_ = bins.get(event.bin_id)
        if bin_ is None or bin_.branch_id not in branch_ids:
            continue
        hour = created_at.hour if granularity is Granularity.HOUR else None
        key = (event.bin_id, created_at.date(), hour)
        current = latest.get(key)
        if current is None or _event_order(event) > _event_order(current):
            latest[key] = event

    out: list[BinReading] = []
    for (bin_id, day, _), event in latest.items():
        bin_ = bins[bin_id]
        out.append(
            BinReading(
                bin_id=bin_id,
                branch_id=bin_.branch_id,
                bin_type=bin_.bin_type,
                day=day,
                bucket=bucket_of(event.created_at, granularity),
                weight=event.net_weight,
                created_at=as_utc(event.created_at),
            )
        )
    out.sort(key=reading_sort_key)
    return out


def reading_sort_key(reading: BinReading) -> tuple:
    hour = reading.bucket if isinstance(reading.bucket, int) else -1
    return (reading.day, hour, reading.bin_id)


def latest_weight_by_bin(readings: Iterable[BinReading]) -> dict[str, float]:
    latest: dict[str, BinReading] = {}
    for reading in readings:
        current = latest.get(reading.bin_id)
        if current is None or reading.created_at >= current.created_at:
            latest[reading.bin_id] = reading
    return {bin_id: reading.weight for bin_id, reading in latest.items()}


def _event_order(event: WasteEvent) -> tuple[datetime, str]:
    return as_utc(event.created_at), event.event_id

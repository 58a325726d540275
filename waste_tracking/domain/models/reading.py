from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import StrEnum

from waste_tracking.domain.models.bin import BinType


class Granularity(StrEnum):
    DAY = "day"
    HOUR = "hour"


@dataclass(slots=True, frozen=True)
class BinReading:
    """Authoritative reading of one bin for one time bucket (the latest event in it)."""

    bin_id: str
    branch_id: str
    bin_type: BinType
    day: date
    bucket: str | int
    weight: float
    created_at: datetime

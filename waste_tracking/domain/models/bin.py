from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any


class BinType(StrEnum):
    GENERAL_WASTE = "GeneralWaste"
    COMMINGLED = "Commingled"
    ORGANICS = "Organics"
    PAPER_CARDBOARD = "PaperCardboard"

    @property
    def is_diverted(self) -> bool:
        return self is not BinType.GENERAL_WASTE

    @property
    def is_recycled(self) -> bool:
        return self in (BinType.COMMINGLED, BinType.PAPER_CARDBOARD)


class EventType(StrEnum):
    DISPOSAL = "disposal"
    CLEANING = "cleaning"


@dataclass(slots=True)
class Bin:
    bin_id: str
    bin_type: BinType
    capacity: float
    branch_id: str
    tare_weight: float = 0.0
    current_weight: float = 0.0

    def clone(self) -> "Bin":
        return Bin(
            bin_id=self.bin_id,
            bin_type=self.bin_type,
            capacity=self.capacity,
            branch_id=self.branch_id,
            tare_weight=self.tare_weight,
            current_weight=self.current_weight,
        )


@dataclass(slots=True, frozen=True)
class WasteEvent:
    event_id: str
    bin_id: str
    net_weight: float
    event_type: EventType
    is_cleaned: bool
    created_at: datetime
    cleaned_by: str | None = None
    request_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "binId": self.bin_id,
            "netWeight": self.net_weight,
            "eventType": self.event_type.value,
            "isCleaned": self.is_cleaned,
            "createdAt": self.created_at.isoformat(),
        }
        if self.cleaned_by is not None:
            payload["cleanedBy"] = self.cleaned_by
        return payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "binId": self.bin_id,
            "netWeight": self.net_weight,
            "eventType": self.event_type.value,
            "isCleaned": self.is_cleaned,
            "cleanedBy": self.cleaned_by,
            "requestId": self.request_id,
            "createdAt": self.created_at.isoformat(),
        }

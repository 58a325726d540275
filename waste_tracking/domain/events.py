from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True, frozen=True)
class WasteEventPublished:
    branch_id: str
    payload: dict[str, Any]

    def to_message(self) -> dict[str, Any]:
        return {"branchId": self.branch_id, "payload": self.payload}

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "WasteEventPublished":
        branch_id = message.get("branchId")
        payload = message.get("payload")
        if not isinstance(branch_id, str) or not branch_id or not isinstance(payload, dict):
            raise ValueError("fan-out message requires branchId and payload")
        return cls(branch_id=branch_id, payload=payload)

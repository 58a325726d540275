from __future__ import annotations

from dataclasses import dataclass

from waste_tracking.domain.models.bin import Bin, EventType


@dataclass(slots=True, frozen=True)
class TareTransition:
    tare_weight: float
    net_weight: float
    tare_changed: bool


class BinTareStateMachine:
    """
    A bin has a single Active state carrying its tare baseline.
    Cleaning moves the baseline to the raw reading; disposal leaves it alone.
    """

    @staticmethod
    def transition(bin_: Bin, raw_weight: float, event_type: EventType) -> TareTransition:
        tare = bin_.tare_weight
        changed = False
        if event_type is EventType.CLEANING:
            tare = raw_weight
            changed = True
        return TareTransition(
            tare_weight=tare,
            net_weight=net_weight(raw_weight, tare),
            tare_changed=changed,
        )


def net_weight(raw_weight: float, tare_weight: float) -> float:
    return max(0.0, float(raw_weight) - float(tare_weight))

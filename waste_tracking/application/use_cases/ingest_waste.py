from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from waste_tracking.application.ports import BinRepoPort, CleanerRepoPort, ClockPort, WasteEventRepoPort
from waste_tracking.application.services.fanout import FanoutDispatcher
from waste_tracking.domain.errors import NotFoundError, ValidationError
from waste_tracking.domain.models.bin import Bin, EventType, WasteEvent
from waste_tracking.domain.state_machine import BinTareStateMachine

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class IngestCommand:
    bin_id: str
    raw_weight: float
    event_type: EventType
    is_cleaned: bool
    cleaned_by: str | None
    request_id: str | None = None


class IngestWasteUseCase:
    def __init__(
        self,
        bins: BinRepoPort,
        events: WasteEventRepoPort,
        cleaners: CleanerRepoPort,
        fanout: FanoutDispatcher,
        clock: ClockPort,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._bins = bins
        self._events = events
        self._cleaners = cleaners
        self._fanout = fanout
        self._clock = clock
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._state_machine = BinTareStateMachine()

    async def ingest(
        self,
        bin_id: Any,
        raw_weight: Any,
        event_type: Any,
        is_cleaned: Any = False,
        cleaned_by: Any = None,
        *,
        request_id: str | None = None,
    ) -> WasteEvent:
        cmd = build_command(bin_id, raw_weight, event_type, is_cleaned, cleaned_by, request_id)
        if cmd.request_id:
            existing = await self._events.find_by_request_id(cmd.request_id)
            if existing is not None:
                log.info(
                    "Ingest duplicate request_id=%s event_id=%s bin_id=%s",
                    cmd.request_id,
                    existing.event_id,
                    existing.bin_id,
                )
                return existing

        bin_ = await self._load_bin(cmd.bin_id)
        if cmd.event_type is EventType.CLEANING:
            await self._verify_cleaner(cmd.cleaned_by)
        return await self._record(bin_, cmd)

    async def clean_bins(self, entries: Iterable[Any], cleaner_id: Any) -> list[WasteEvent]:
        cleaner_key = _clean_text(cleaner_id)
        if not cleaner_key:
            raise ValidationError("cleanerIdentity is required")
        await self._verify_cleaner(cleaner_key)

        created: list[WasteEvent] = []
        skipped = 0
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                log.warning("Bulk clean skip index=%s reason=entry is not an object", index)
                skipped += 1
                continue
            try:
                cmd = build_command(
                    entry.get("binId"),
                    entry.get("rawWeight"),
                    EventType.CLEANING,
                    True,
                    cleaner_key,
                )
                bin_ = await self._load_bin(cmd.bin_id)
            except (ValidationError, NotFoundError) as exc:
                log.warning("Bulk clean skip index=%s bin_id=%s reason=%s", index, entry.get("binId"), exc.message)
                skipped += 1
                continue
            created.append(await self._record(bin_, cmd))

        log.info("Bulk clean done cleaner_id=%s created=%s skipped=%s", cleaner_key, len(created), skipped)
        return created

    async def _record(self, bin_: Bin, cmd: IngestCommand) -> WasteEvent:
        transition = self._state_machine.transition(bin_, cmd.raw_weight, cmd.event_type)
        if transition.tare_changed:
            # Not atomic with the insert below; a repeated cleaning converges to the same tare.
            bin_ = await self._bins.update_tare(bin_.bin_id, transition.tare_weight)
            log.debug("Tare updated bin_id=%s tare_weight=%s", bin_.bin_id, bin_.tare_weight)

        event = WasteEvent(
            event_id=self._id_factory(),
            bin_id=bin_.bin_id,
            net_weight=transition.net_weight,
            event_type=cmd.event_type,
            is_cleaned=cmd.is_cleaned,
            cleaned_by=cmd.cleaned_by,
            created_at=self._clock.now(),
            request_id=cmd.request_id,
        )
        saved = await self._events.insert(event)
        log.info(
            "Waste event created event_id=%s bin_id=%s branch_id=%s type=%s raw=%s net=%s",
            saved.event_id,
            saved.bin_id,
            bin_.branch_id,
            saved.event_type.value,
            cmd.raw_weight,
            saved.net_weight,
        )
        self._fanout.dispatch(bin_.branch_id, saved.to_payload())
        return saved

    async def _load_bin(self, bin_id: str) -> Bin:
        bin_ = await self._bins.get(bin_id)
        if bin_ is None:
            raise NotFoundError(f"Bin {bin_id} not found")
        return bin_

    async def _verify_cleaner(self, cleaner_id: str | None) -> None:
        if not cleaner_id or await self._cleaners.get(cleaner_id) is None:
            raise NotFoundError(f"Cleaner {cleaner_id} not found")


def build_command(
    bin_id: Any,
    raw_weight: Any,
    event_type: Any,
    is_cleaned: Any = False,
    cleaned_by: Any = None,
    request_id: Any = None,
) -> IngestCommand:
    bin_key = _clean_text(bin_id)
    if not bin_key:
        raise ValidationError("binId is required")
    weight = _parse_weight(raw_weight)
    if event_type is None or event_type == "":
        raise ValidationError("eventType is required")
    try:
        kind = EventType(event_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown eventType '{event_type}'") from exc

    cleaner_key = _clean_text(cleaned_by) or None
    if kind is EventType.CLEANING:
        if is_cleaned is not True:
            raise ValidationError("Cleaning events must set isCleaned=true")
        if cleaner_key is None:
            raise ValidationError("Cleaning events require cleanedBy")

    return IngestCommand(
        bin_id=bin_key,
        raw_weight=weight,
        event_type=kind,
        is_cleaned=bool(is_cleaned),
        cleaned_by=cleaner_key,
        request_id=_clean_text(request_id) or None,
    )


def _parse_weight(value: Any) -> float:
    if value is None:
        raise ValidationError("rawWeight is required")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"rawWeight must be numeric, got {value!r}")
    weight = float(value)
    if math.isnan(weight) or math.isinf(weight):
        raise ValidationError("rawWeight must be a finite number")
    if weight < 0:
        raise ValidationError("rawWeight must be >= 0")
    return weight


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field

from waste_tracking.application.services.dashboard import DashboardQueryService
from waste_tracking.application.use_cases.ingest_waste import IngestWasteUseCase
from waste_tracking.domain.errors import ValidationError
from waste_tracking.domain.models.org import Scope
from waste_tracking.domain.rules.metrics import LeaderboardView
from waste_tracking.domain.rules.periods import parse_filter, parse_zoom_date

log = logging.getLogger(__name__)


class IngestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bin_id: Any = Field(default=None, alias="binId")
    raw_weight: Any = Field(default=None, alias="rawWeight")
    event_type: Any = Field(default=None, alias="eventType")
    is_cleaned: Any = Field(default=False, alias="isCleaned")
    cleaned_by: Any = Field(default=None, alias="cleanedBy")
    request_id: str | None = Field(default=None, alias="requestId")


class CleanBinsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entries: list[Any] = Field(default_factory=list)
    cleaner_identity: Any = Field(default=None, alias="cleanerIdentity")


def build_http_router(ingest: IngestWasteUseCase, dashboard: DashboardQueryService) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @router.post("/waste", status_code=201)
    async def ingest_waste(req: IngestRequest) -> dict:
        log.info("HTTP POST /waste bin_id=%s event_type=%s", req.bin_id, req.event_type)
        event = await ingest.ingest(
            req.bin_id,
            req.raw_weight,
            req.event_type,
            req.is_cleaned,
            req.cleaned_by,
            request_id=req.request_id,
        )
        return {"status": "ok", "data": event.to_dict()}

    @router.post("/waste/clean", status_code=201)
    async def clean_bins(req: CleanBinsRequest) -> dict:
        log.info("HTTP POST /waste/clean entries=%s cleaner=%s", len(req.entries), req.cleaner_identity)
        events = await ingest.clean_bins(req.entries, req.cleaner_identity)
        return {"status": "ok", "count": len(events), "data": [event.to_dict() for event in events]}

    @router.get("/analytics/overview")
    async def overview(
        branch_id: str | None = Query(default=None, alias="branchId"),
        company_id: str | None = Query(default=None, alias="companyId"),
        org_unit_id: str | None = Query(default=None, alias="orgUnitId"),
        date_filter: str | None = Query(default=None, alias="filter"),
    ) -> dict:
        scope = Scope(branch_id=branch_id, company_id=company_id, org_unit_id=org_unit_id)
        return {"status": "ok", "data": await dashboard.overview(scope, parse_filter(date_filter))}

    @router.get("/analytics/trend")
    async def trend(
        branch_id: str | None = Query(default=None, alias="branchId"),
        company_id: str | None = Query(default=None, alias="companyId"),
        org_unit_id: str | None = Query(default=None, alias="orgUnitId"),
        date_filter: str | None = Query(default=None, alias="filter"),
        zoom_date: str | None = Query(default=None, alias="zoomDate"),
    ) -> dict:
        scope = Scope(branch_id=branch_id, company_id=company_id, org_unit_id=org_unit_id)
        rows = await dashboard.trend_chart(scope, parse_filter(date_filter), parse_zoom_date(zoom_date))
        return {"status": "ok", "data": rows}

    @router.get("/analytics/disposition")
    async def disposition(
        branch_id: str | None = Query(default=None, alias="branchId"),
        company_id: str | None = Query(default=None, alias="companyId"),
        org_unit_id: str | None = Query(default=None, alias="orgUnitId"),
        date_filter: str | None = Query(default=None, alias="filter"),
        zoom_date: str | None = Query(default=None, alias="zoomDate"),
    ) -> dict:
        scope = Scope(branch_id=branch_id, company_id=company_id, org_unit_id=org_unit_id)
        rows = await dashboard.disposition_rates(scope, parse_filter(date_filter), parse_zoom_date(zoom_date))
        return {"status": "ok", "data": rows}

    @router.get("/analytics/leaderboard")
    async def leaderboard(
        branch_id: str | None = Query(default=None, alias="branchId"),
        company_id: str | None = Query(default=None, alias="companyId"),
        org_unit_id: str | None = Query(default=None, alias="orgUnitId"),
        date_filter: str | None = Query(default=None, alias="filter"),
        view: str = Query(default=LeaderboardView.DIVERSION.value),
    ) -> dict:
        scope = Scope(branch_id=branch_id, company_id=company_id, org_unit_id=org_unit_id)
        try:
            ranking = LeaderboardView(view)
        except ValueError as exc:
            raise ValidationError(f"Unknown leaderboard view '{view}'") from exc
        selected = parse_filter(date_filter) if date_filter else None
        return {"status": "ok", "data": await dashboard.leaderboard(scope, selected, ranking)}

    @router.get("/analytics/activity")
    async def activity(
        branch_id: str | None = Query(default=None, alias="branchId"),
        company_id: str | None = Query(default=None, alias="companyId"),
        org_unit_id: str | None = Query(default=None, alias="orgUnitId"),
    ) -> dict:
        scope = Scope(branch_id=branch_id, company_id=company_id, org_unit_id=org_unit_id)
        rows = await dashboard.activity_feed(scope)
        return {"status": "ok", "count": len(rows), "data": rows}

    @router.get("/analytics/bins/status")
    async def bin_status(branch_id: str = Query(alias="branchId", min_length=1)) -> dict:
        return {"status": "ok", "data": await dashboard.bin_status(branch_id)}

    @router.get("/analytics/bins/history")
    async def bin_history(
        branch_id: str = Query(alias="branchId", min_length=1),
        days: int = Query(default=7, ge=1, le=31),
    ) -> dict:
        return {"status": "ok", "data": await dashboard.bin_history(branch_id, days)}

    @router.get("/analytics/bins/{bin_id}/latest")
    async def latest_bin_reading(bin_id: str) -> dict:
        return {"status": "ok", "data": await dashboard.latest_bin_reading(bin_id)}

    @router.get("/analytics/contribution")
    async def contribution(branch_id: str = Query(alias="branchId", min_length=1)) -> dict:
        return {"status": "ok", "data": await dashboard.branch_contribution(branch_id)}

    return router

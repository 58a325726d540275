from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Any

from waste_tracking.application.ports import (
    BranchRepoPort,
    ClockPort,
    CompanyRepoPort,
    WasteEventRepoPort,
)
from waste_tracking.application.services.aggregation import OverviewMetrics, TemporalAggregationEngine
from waste_tracking.application.use_cases.resolve_branches import OrgHierarchyResolver
from waste_tracking.domain.errors import NotFoundError
from waste_tracking.domain.models.org import Scope
from waste_tracking.domain.rules.metrics import LeaderboardEntity, LeaderboardView, percentage
from waste_tracking.domain.rules.periods import (
    DateFilter,
    current_window,
    leaderboard_window,
    trailing_days_window,
    utc_day_range,
)

log = logging.getLogger(__name__)


class DashboardQueryService:
    def __init__(
        self,
        resolver: OrgHierarchyResolver,
        engine: TemporalAggregationEngine,
        branches: BranchRepoPort,
        companies: CompanyRepoPort,
        events: WasteEventRepoPort,
        clock: ClockPort,
        *,
        leaderboard_fallback_day: int,
        activity_feed_days: int,
        activity_feed_limit: int,
    ) -> None:
        self._resolver = resolver
        self._engine = engine
        self._branches = branches
        self._companies = companies
        self._events = events
        self._clock = clock
        self._leaderboard_fallback_day = leaderboard_fallback_day
        self._activity_feed_days = activity_feed_days
        self._activity_feed_limit = activity_feed_limit

    async def overview(self, scope: Scope, date_filter: DateFilter) -> dict[str, Any]:
        branch_ids = await self._resolver.resolve(scope)
        if not branch_ids:
            log.info("Overview resolved no branches scope=%s", scope)
            return OverviewMetrics.empty().to_dict()
        metrics = await self._engine.overview(branch_ids, date_filter, self._clock.now())
        return metrics.to_dict()

    async def trend_chart(
        self,
        scope: Scope,
        date_filter: DateFilter,
        zoom_date: date | None = None,
    ) -> list[dict[str, Any]]:
        branch_ids = await self._resolver.resolve(scope)
        return await self._engine.time_series(branch_ids, date_filter, self._clock.now(), zoom_date)

    async def disposition_rates(
        self,
        scope: Scope,
        date_filter: DateFilter,
        zoom_date: date | None = None,
    ) -> list[dict[str, Any]]:
        branch_ids = await self._resolver.resolve(scope)
        return await self._engine.disposition(branch_ids, date_filter, self._clock.now(), zoom_date)

    async def leaderboard(
        self,
        scope: Scope,
        date_filter: DateFilter | None,
        view: LeaderboardView,
    ) -> dict[str, Any]:
        now = self._clock.now()
        if date_filter is None:
            window, period = leaderboard_window(now, self._leaderboard_fallback_day)
        else:
            window, period = current_window(date_filter, now), date_filter.value

        if scope.is_empty:
            entities = await self._company_entities()
        else:
            entities = await self._branch_entities(await self._resolver.resolve(scope))
        rows = await self._engine.leaderboard(entities, window, view)
        return {
            "period": period,
            "window": window.to_dict(),
            "view": view.value,
            "leaderboard": [row.to_dict() for row in rows],
        }

    async def bin_status(self, branch_id: str) -> list[dict[str, Any]]:
        return await self._engine.bin_status(branch_id, self._clock.now())

    async def latest_bin_reading(self, bin_id: str) -> dict[str, Any] | None:
        event = await self._events.latest_for_bin(bin_id, utc_day_range(self._clock.now()))
        return event.to_dict() if event else None

    async def bin_history(self, branch_id: str, days: int = 7) -> list[dict[str, Any]]:
        return await self._engine.bin_history(branch_id, self._clock.now(), days)

    async def branch_contribution(self, branch_id: str) -> dict[str, Any]:
        branch = await self._branches.get(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch {branch_id} not found")
        today = utc_day_range(self._clock.now())
        branch_total = (await self._engine.totals({branch_id}, today)).total
        company_ids = await self._resolver.resolve(Scope(company_id=branch.company_id))
        company_total = (await self._engine.totals(company_ids | {branch_id}, today)).total
        return {
            "branchId": branch_id,
            "todayWaste": round(branch_total, 3),
            "companyWaste": round(company_total, 3),
            "branchContribution": round(percentage(branch_total, company_total)),
        }

    async def activity_feed(self, scope: Scope) -> list[dict[str, Any]]:
        branch_ids = await self._resolver.resolve(scope)
        if not branch_ids:
            return []
        window = trailing_days_window(self._clock.now(), self._activity_feed_days)
        events = await self._events.list_events(branch_ids, window, self._activity_feed_limit)
        return [event.to_dict() for event in events]

    async def _branch_entities(self, branch_ids: frozenset[str]) -> list[LeaderboardEntity]:
        branches = await self._branches.get_many(branch_ids)
        names = {branch.branch_id: branch.name for branch in branches}
        return [
            LeaderboardEntity(entity_id=branch_id, name=names.get(branch_id, branch_id), branch_ids=frozenset({branch_id}))
            for branch_id in sorted(branch_ids)
        ]

    async def _company_entities(self) -> list[LeaderboardEntity]:
        by_company: dict[str, set[str]] = defaultdict(set)
        for branch in await self._branches.list_active():
            by_company[branch.company_id].add(branch.branch_id)
        companies = await self._companies.get_many(by_company.keys())
        names = {company.company_id: company.name for company in companies if not company.is_deleted}
        return [
            LeaderboardEntity(entity_id=company_id, name=names[company_id], branch_ids=frozenset(by_company[company_id]))
            for company_id in sorted(by_company)
            if company_id in names
        ]

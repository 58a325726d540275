from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from waste_tracking.bootstrap import build_runtime
from waste_tracking.config import Settings
from waste_tracking.domain.errors import InternalError, NotFoundError
from waste_tracking.domain.models.bin import BinType, EventType
from waste_tracking.domain.models.reading import Granularity
from waste_tracking.domain.rules.periods import utc_day_range
from waste_tracking.infrastructure.sqlserver.connection import SQLServerConnection
from waste_tracking.infrastructure.sqlserver.repos import (
    SqlBinRepo,
    SqlBranchRepo,
    SqlCleanerRepo,
    SqlWasteEventRepo,
    from_db_time,
    to_db_time,
)


class FakeConnection:
    def __init__(
        self,
        rows: list[list[dict[str, Any]]] | None = None,
        rowcount: int = 1,
        config: Settings | None = None,
    ) -> None:
        self.config = config or Settings()
        self._rows = list(rows or [])
        self._rowcount = rowcount
        self.queries: list[tuple[str, list[Any]]] = []

    async def query_rows(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        self.queries.append((query, params))
        return self._rows.pop(0) if self._rows else []

    async def execute(self, query: str, params: list[Any]) -> int:
        self.queries.append((query, params))
        return self._rowcount


def test_db_time_is_naive_utc():
    aware = datetime(2026, 10, 14, 14, 30, tzinfo=timezone.utc)
    assert to_db_time(aware) == datetime(2026, 10, 14, 14, 30)
    assert from_db_time(datetime(2026, 10, 14, 14, 30)) == aware


def test_latest_readings_query_partitions_by_bucket():
    repo = SqlWasteEventRepo(FakeConnection())
    daily = repo.latest_readings_query(3, Granularity.DAY)
    hourly = repo.latest_readings_query(3, Granularity.HOUR)

    assert "ROW_NUMBER() OVER (PARTITION BY e.[bin_id], CAST(e.[created_at] AS date) ORDER BY" in daily
    assert "DATEPART(hour, e.[created_at])" not in daily
    assert "DATEPART(hour, e.[created_at])" in hourly
    assert "ORDER BY e.[created_at] DESC, e.[id] DESC" in daily
    assert daily.count("?") == 5


@pytest.mark.asyncio
async def test_latest_readings_maps_rows():
    conn = FakeConnection(
        rows=[
            [
                {
                    "bin_id": "B2",
                    "branch_id": "BR1",
                    "bin_type": "Commingled",
                    "net_weight": 4,
                    "created_at": datetime(2026, 10, 14, 9, 15),
                },
                {
                    "bin_id": "B1",
                    "branch_id": "BR1",
                    "bin_type": "GeneralWaste",
                    "net_weight": 7.5,
                    "created_at": datetime(2026, 10, 14, 9, 45),
                },
            ]
        ]
    )
    repo = SqlWasteEventRepo(conn)
    window = utc_day_range(datetime(2026, 10, 14, tzinfo=timezone.utc))

    readings = await repo.latest_readings({"BR1"}, window, Granularity.HOUR)

    assert [(r.bin_id, r.bin_type, r.bucket, r.weight) for r in readings] == [
        ("B1", BinType.GENERAL_WASTE, 9, 7.5),
        ("B2", BinType.COMMINGLED, 9, 4.0),
    ]
    _, params = conn.queries[0]
    assert params == [to_db_time(window.start), to_db_time(window.end), "BR1"]


@pytest.mark.asyncio
async def test_latest_readings_chunks_large_branch_lists():
    conn = FakeConnection(config=Settings(sql_max_in_params=10))
    repo = SqlWasteEventRepo(conn)
    branch_ids = {f"BR{i:03d}" for i in range(25)}

    await repo.latest_readings(branch_ids, utc_day_range(datetime(2026, 10, 14)), Granularity.DAY)

    assert [len(params) - 2 for _, params in conn.queries] == [10, 10, 5]


@pytest.mark.asyncio
async def test_find_by_request_id_maps_event():
    conn = FakeConnection(
        rows=[
            [
                {
                    "id": "evt-1",
                    "bin_id": "B1",
                    "net_weight": 0,
                    "event_type": "cleaning",
                    "is_cleaned": 1,
                    "cleaned_by": "C1",
                    "request_id": "req-1",
                    "created_at": datetime(2026, 10, 14, 9),
                }
            ]
        ]
    )
    event = await SqlWasteEventRepo(conn).find_by_request_id("req-1")
    assert event is not None
    assert event.event_type is EventType.CLEANING
    assert event.is_cleaned is True
    assert event.created_at.tzinfo is timezone.utc


@pytest.mark.asyncio
async def test_update_tare_missing_bin_is_not_found():
    repo = SqlBinRepo(FakeConnection(rowcount=0))
    with pytest.raises(NotFoundError):
        await repo.update_tare("NOPE", 3.0)


@pytest.mark.asyncio
async def test_update_tare_resets_current_weight_in_one_statement():
    conn = FakeConnection(
        rows=[
            [
                {
                    "id": "B1",
                    "bin_type": "GeneralWaste",
                    "capacity": 120,
                    "branch_id": "BR1",
                    "tare_weight": 5,
                    "current_weight": 0,
                }
            ]
        ]
    )
    bin_ = await SqlBinRepo(conn).update_tare("B1", 5.0)
    update_sql, params = conn.queries[0]
    assert "SET [tare_weight] = ?, [current_weight] = 0" in update_sql
    assert params == [5.0, "B1"]
    assert bin_.tare_weight == 5.0


@pytest.mark.asyncio
async def test_list_active_filters_by_attributes():
    conn = FakeConnection()
    await SqlBranchRepo(conn).list_active(company_id="CO1", city="Sydney")
    query, params = conn.queries[0]
    assert "[is_deleted] = 0 AND [company_id] = ? AND [city] = ?" in query
    assert params == ["CO1", "Sydney"]


def test_repos_use_tables_from_connection_settings():
    conn = FakeConnection(config=Settings(sql_schema="waste", bin_table="custom_bins", cleaner_table="staff"))
    assert SqlBinRepo(conn).table == "[waste].[custom_bins]"
    assert SqlCleanerRepo(conn).table == "[waste].[staff]"
    query = SqlWasteEventRepo(conn).latest_readings_query(1, Granularity.DAY)
    assert "INNER JOIN [waste].[custom_bins] AS b" in query
    assert "FROM [waste].[waste_events] AS e" in query


def test_runtime_passes_its_settings_to_sql_store():
    cfg = Settings(storage_backend="sqlserver", bin_table="custom_bins")
    runtime = build_runtime(cfg)
    assert runtime.connection is not None
    assert runtime.connection.config is cfg
    assert SqlBinRepo(runtime.connection).table == "[dbo].[custom_bins]"


class _UnreachablePool:
    def acquire(self):
        raise ConnectionError("login timeout expired")


@pytest.mark.asyncio
async def test_unreachable_database_raises_internal_error():
    conn = SQLServerConnection(Settings())
    conn._pool = _UnreachablePool()
    conn._gate = asyncio.Semaphore(1)

    with pytest.raises(InternalError) as excinfo:
        await conn.query_rows("SELECT 1", [])
    assert isinstance(excinfo.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_query_before_start_raises_internal_error():
    with pytest.raises(InternalError):
        await SQLServerConnection(Settings()).execute("DELETE FROM [dbo].[bins]", [])

from __future__ import annotations

import logging
from collections.abc import Collection, Iterator, Sequence
from datetime import datetime, timezone
from typing import Any

from waste_tracking.config import Settings
from waste_tracking.domain.errors import NotFoundError
from waste_tracking.domain.models.bin import Bin, BinType, EventType, WasteEvent
from waste_tracking.domain.models.org import Branch, Cleaner, Company, OrgUnit
from waste_tracking.domain.models.reading import BinReading, Granularity
from waste_tracking.domain.rules.periods import TimeWindow, as_utc
from waste_tracking.domain.rules.readings import bucket_of, reading_sort_key
from waste_tracking.infrastructure.sqlserver.connection import SQLServerConnection

log = logging.getLogger(__name__)

_BIN_COLUMNS = "[id], [bin_type], [capacity], [branch_id], [tare_weight], [current_weight]"
_EVENT_COLUMNS = (
    "[id], [bin_id], [net_weight], [event_type], [is_cleaned], [cleaned_by], [request_id], [created_at]"
)
_BRANCH_COLUMNS = "[id], [company_id], [name], [city], [country], [subdivision], [is_deleted]"


class _SqlRepo:
    """Base for repos sharing one connection; table names come from the connection's settings."""

    _table_setting = ""

    def __init__(self, connection: SQLServerConnection) -> None:
        self._conn = connection
        self._config: Settings = connection.config
        self._table = self._resolve(self._table_setting)

    def _resolve(self, table_setting: str) -> str:
        return SQLServerConnection.table_name(self._config.sql_schema, getattr(self._config, table_setting))

    def _chunks(self, values: Collection[str]) -> Iterator[Sequence[str]]:
        return _chunks(sorted(values), self._config.sql_max_in_params)

    @property
    def table(self) -> str:
        return self._table


class SqlBinRepo(_SqlRepo):
    _table_setting = "bin_table"

    async def get(self, bin_id: str) -> Bin | None:
        rows = await self._conn.query_rows(
            f"SELECT {_BIN_COLUMNS} FROM {self._table} WHERE [id] = ?",
            [bin_id],
        )
        return _row_to_bin(rows[0]) if rows else None

    async def update_tare(self, bin_id: str, tare_weight: float) -> Bin:
        if tare_weight < 0:
            raise ValueError("tare_weight must be >= 0")
        updated = await self._conn.execute(
            f"UPDATE {self._table} SET [tare_weight] = ?, [current_weight] = 0 WHERE [id] = ?",
            [tare_weight, bin_id],
        )
        if updated == 0:
            raise NotFoundError(f"Bin {bin_id} not found")
        bin_ = await self.get(bin_id)
        if bin_ is None:
            raise NotFoundError(f"Bin {bin_id} not found")
        return bin_

    async def list_by_branches(self, branch_ids: Collection[str]) -> list[Bin]:
        out: list[Bin] = []
        for chunk in self._chunks(branch_ids):
            rows = await self._conn.query_rows(
                f"SELECT {_BIN_COLUMNS} FROM {self._table} WHERE [branch_id] IN ({_placeholders(len(chunk))})",
                list(chunk),
            )
            out.extend(_row_to_bin(row) for row in rows)
        return out

    async def count_by_branches(self, branch_ids: Collection[str]) -> int:
        total = 0
        for chunk in self._chunks(branch_ids):
            rows = await self._conn.query_rows(
                f"SELECT COUNT(*) AS bin_count FROM {self._table} WHERE [branch_id] IN ({_placeholders(len(chunk))})",
                list(chunk),
            )
            total += int(rows[0]["bin_count"]) if rows else 0
        return total


class SqlWasteEventRepo(_SqlRepo):
    _table_setting = "waste_event_table"

    def __init__(self, connection: SQLServerConnection) -> None:
        super().__init__(connection)
        self._bin_table = self._resolve("bin_table")

    async def insert(self, event: WasteEvent) -> WasteEvent:
        await self._conn.execute(
            f"INSERT INTO {self._table} ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                event.event_id,
                event.bin_id,
                event.net_weight,
                event.event_type.value,
                event.is_cleaned,
                event.cleaned_by,
                event.request_id,
                to_db_time(event.created_at),
            ],
        )
        return event

    async def find_by_request_id(self, request_id: str) -> WasteEvent | None:
        rows = await self._conn.query_rows(
            f"SELECT TOP 1 {_EVENT_COLUMNS} FROM {self._table} WHERE [request_id] = ?",
            [request_id],
        )
        return _row_to_event(rows[0]) if rows else None

    async def latest_readings(
        self,
        branch_ids: Collection[str],
        window: TimeWindow,
        granularity: Granularity,
    ) -> list[BinReading]:
        out: list[BinReading] = []
        for chunk in self._chunks(branch_ids):
            query = self.latest_readings_query(len(chunk), granularity)
            params: list[Any] = [to_db_time(window.start), to_db_time(window.end), *chunk]
            for row in await self._conn.query_rows(query, params):
                created_at = from_db_time(row["created_at"])
                out.append(
                    BinReading(
                        bin_id=str(row["bin_id"]),
                        branch_id=str(row["branch_id"]),
                        bin_type=BinType(row["bin_type"]),
                        day=created_at.date(),
                        bucket=bucket_of(created_at, granularity),
                        weight=float(row["net_weight"]),
                        created_at=created_at,
                    )
                )
        out.sort(key=reading_sort_key)
        return out

    def latest_readings_query(self, branch_count: int, granularity: Granularity) -> str:
        partition = "e.[bin_id], CAST(e.[created_at] AS date)"
        if granularity is Granularity.HOUR:
            partition += ", DATEPART(hour, e.[created_at])"
        return (
            "SELECT ranked.[bin_id], ranked.[branch_id], ranked.[bin_type], ranked.[net_weight], ranked.[created_at] "
            "FROM ("
            "SELECT e.[bin_id], b.[branch_id], b.[bin_type], e.[net_weight], e.[created_at], "
            f"ROW_NUMBER() OVER (PARTITION BY {partition} ORDER BY e.[created_at] DESC, e.[id] DESC) AS rn "
            f"FROM {self._table} AS e "
            f"INNER JOIN {self._bin_table} AS b ON b.[id] = e.[bin_id] "
            "WHERE e.[created_at] >= ? AND e.[created_at] <= ? "
            f"AND b.[branch_id] IN ({_placeholders(branch_count)})"
            ") AS ranked WHERE ranked.rn = 1"
        )

    async def latest_for_bin(self, bin_id: str, window: TimeWindow) -> WasteEvent | None:
        rows = await self._conn.query_rows(
            f"SELECT TOP 1 {_EVENT_COLUMNS} FROM {self._table} "
            "WHERE [bin_id] = ? AND [created_at] >= ? AND [created_at] <= ? "
            "ORDER BY [created_at] DESC, [id] DESC",
            [bin_id, to_db_time(window.start), to_db_time(window.end)],
        )
        return _row_to_event(rows[0]) if rows else None

    async def list_events(
        self,
        branch_ids: Collection[str],
        window: TimeWindow,
        limit: int,
    ) -> list[WasteEvent]:
        out: list[WasteEvent] = []
        columns = ", ".join(f"e.{col.strip()}" for col in _EVENT_COLUMNS.split(","))
        for chunk in self._chunks(branch_ids):
            rows = await self._conn.query_rows(
                f"SELECT TOP {int(limit)} {columns} FROM {self._table} AS e "
                f"INNER JOIN {self._bin_table} AS b ON b.[id] = e.[bin_id] "
                "WHERE e.[created_at] >= ? AND e.[created_at] <= ? "
                f"AND b.[branch_id] IN ({_placeholders(len(chunk))}) "
                "ORDER BY e.[created_at] ASC, e.[id] ASC",
                [to_db_time(window.start), to_db_time(window.end), *chunk],
            )
            out.extend(_row_to_event(row) for row in rows)
        out.sort(key=lambda event: (event.created_at, event.event_id))
        return out[:limit]


class SqlBranchRepo(_SqlRepo):
    _table_setting = "branch_table"

    async def get(self, branch_id: str) -> Branch | None:
        rows = await self._conn.query_rows(f"SELECT {_BRANCH_COLUMNS} FROM {self._table} WHERE [id] = ?", [branch_id])
        return _row_to_branch(rows[0]) if rows else None

    async def get_many(self, branch_ids: Collection[str]) -> list[Branch]:
        out: list[Branch] = []
        for chunk in self._chunks(branch_ids):
            rows = await self._conn.query_rows(
                f"SELECT {_BRANCH_COLUMNS} FROM {self._table} WHERE [id] IN ({_placeholders(len(chunk))})",
                list(chunk),
            )
            out.extend(_row_to_branch(row) for row in rows)
        return out

    async def list_active(
        self,
        *,
        company_id: str | None = None,
        city: str | None = None,
        country: str | None = None,
        subdivision: str | None = None,
    ) -> list[Branch]:
        clauses = ["[is_deleted] = 0"]
        params: list[Any] = []
        for column, value in (
            ("company_id", company_id),
            ("city", city),
            ("country", country),
            ("subdivision", subdivision),
        ):
            if value is not None:
                clauses.append(f"[{column}] = ?")
                params.append(value)
        rows = await self._conn.query_rows(
            f"SELECT {_BRANCH_COLUMNS} FROM {self._table} WHERE {' AND '.join(clauses)}",
            params,
        )
        return [_row_to_branch(row) for row in rows]


class SqlOrgUnitRepo(_SqlRepo):
    _table_setting = "org_unit_table"

    async def get(self, org_unit_id: str) -> OrgUnit | None:
        rows = await self._conn.query_rows(
            f"SELECT [id], [name], [type], [company_id], [parent_id], [branch_id] FROM {self._table} WHERE [id] = ?",
            [org_unit_id],
        )
        if not rows:
            return None
        row = rows[0]
        return OrgUnit(
            org_unit_id=str(row["id"]),
            name=str(row["name"]),
            unit_type=str(row["type"]),
            company_id=str(row["company_id"]),
            parent_id=_opt_str(row.get("parent_id")),
            branch_id=_opt_str(row.get("branch_id")),
        )


class SqlCleanerRepo(_SqlRepo):
    _table_setting = "cleaner_table"

    async def get(self, cleaner_id: str) -> Cleaner | None:
        rows = await self._conn.query_rows(f"SELECT [id], [name], [code] FROM {self._table} WHERE [id] = ?", [cleaner_id])
        if not rows:
            return None
        row = rows[0]
        return Cleaner(cleaner_id=str(row["id"]), name=str(row["name"]), code=_opt_str(row.get("code")))


class SqlCompanyRepo(_SqlRepo):
    _table_setting = "company_table"

    async def get_many(self, company_ids: Collection[str]) -> list[Company]:
        out: list[Company] = []
        for chunk in self._chunks(company_ids):
            rows = await self._conn.query_rows(
                f"SELECT [id], [name], [is_deleted] FROM {self._table} WHERE [id] IN ({_placeholders(len(chunk))})",
                list(chunk),
            )
            out.extend(
                Company(company_id=str(row["id"]), name=str(row["name"]), is_deleted=bool(row["is_deleted"]))
                for row in rows
            )
        return out


def to_db_time(moment: datetime) -> datetime:
    # Stored as naive UTC datetime2.
    return as_utc(moment).replace(tzinfo=None)


def from_db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _chunks(values: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(values), max(1, size)):
        yield values[start : start + size]


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _row_to_bin(row: dict[str, Any]) -> Bin:
    return Bin(
        bin_id=str(row["id"]),
        bin_type=BinType(row["bin_type"]),
        capacity=float(row["capacity"]),
        branch_id=str(row["branch_id"]),
        tare_weight=float(row["tare_weight"] or 0),
        current_weight=float(row["current_weight"] or 0),
    )


def _row_to_event(row: dict[str, Any]) -> WasteEvent:
    return WasteEvent(
        event_id=str(row["id"]),
        bin_id=str(row["bin_id"]),
        net_weight=float(row["net_weight"]),
        event_type=EventType(row["event_type"]),
        is_cleaned=bool(row["is_cleaned"]),
        cleaned_by=_opt_str(row.get("cleaned_by")),
        request_id=_opt_str(row.get("request_id")),
        created_at=from_db_time(row["created_at"]),
    )


def _row_to_branch(row: dict[str, Any]) -> Branch:
    return Branch(
        branch_id=str(row["id"]),
        company_id=str(row["company_id"]),
        name=str(row["name"]),
        city=str(row["city"] or ""),
        country=str(row["country"] or ""),
        subdivision=str(row["subdivision"] or ""),
        is_deleted=bool(row["is_deleted"]),
    )

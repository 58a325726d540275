from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any

import aioodbc
import pyodbc

from waste_tracking.config import Settings, settings as default_settings
from waste_tracking.domain.errors import InternalError

log = logging.getLogger(__name__)
_DRIVER_VERSION_PATTERN = re.compile(r"^ODBC Driver (\d+) for SQL Server$", re.IGNORECASE)
_VALID_SQL_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SLOW_QUERY_MS = 2000


class SQLServerConnection:
    """
    Shared aioodbc pool for every SQL repository.

    Runs in autocommit; the bin tare update and the event insert are separate statements.
    """

    def __init__(self, config: Settings | None = None) -> None:
        self._config = config or default_settings
        self._pool: aioodbc.pool.Pool | None = None
        self._gate: asyncio.Semaphore | None = None
        self._driver: str | None = None

    @property
    def config(self) -> Settings:
        return self._config

    async def start(self) -> None:
        if self._pool is not None:
            log.debug("SQL pool start skipped because pool already exists")
            return
        candidates = build_driver_candidates(self._config.sql_driver)
        if not candidates:
            raise InternalError("No SQL Server ODBC driver detected; set SQL_DRIVER")

        failures: list[str] = []
        for driver in candidates:
            try:
                await self._open_pool(driver)
            except Exception as exc:  # noqa: BLE001
                failures.append(f"{driver}: {exc!r}")
                log.warning("SQL pool open failed driver=%s error=%r", driver, exc)
                continue
            if driver != self._config.sql_driver:
                log.warning("SQL driver fallback configured=%s using=%s", self._config.sql_driver, driver)
            return

        installed = ", ".join(list_sql_server_drivers()) or "<none>"
        log.error("SQL pool unavailable attempts=%s installed=%s", len(failures), installed)
        raise InternalError(f"Cannot connect to SQL Server; tried [{'; '.join(failures)}], installed [{installed}]")

    async def _open_pool(self, driver: str) -> None:
        limit = max(1, int(self._config.sql_max_concurrent_queries))
        # Legacy "SQL Server" driver is not stable under concurrent cursors.
        if driver.strip().lower() == "sql server":
            limit = 1
        maxsize = max(1, min(8, limit))
        self._pool = await aioodbc.create_pool(
            dsn=self._config.build_odbc_dsn(driver=driver),
            autocommit=True,
            minsize=1,
            maxsize=maxsize,
        )
        self._gate = asyncio.Semaphore(limit)
        self._driver = driver
        log.info(
            "SQL pool ready driver=%s database=%s limit=%s pool_maxsize=%s",
            driver,
            self._config.sql_database,
            limit,
            maxsize,
        )

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool, self._gate = self._pool, None, None
        pool.close()
        await pool.wait_closed()
        log.info("SQL pool closed driver=%s", self._driver)

    async def query_rows(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        rows, columns, _ = await self._run(query, params, fetch=True)
        return [dict(zip(columns, row, strict=True)) for row in rows]

    async def execute(self, query: str, params: list[Any]) -> int:
        _, _, rowcount = await self._run(query, params, fetch=False)
        return rowcount

    async def _run(self, query: str, params: list[Any], *, fetch: bool) -> tuple[list[Any], list[str], int]:
        if self._pool is None or self._gate is None:
            raise InternalError("SQL connection has not started")
        preview = _compact_sql(query, max_chars=self._config.log_sql_preview_chars)
        rows: list[Any] = []
        columns: list[str] = []
        started_at = time.perf_counter()
        async with self._gate:
            try:
                async with self._pool.acquire() as conn, conn.cursor() as cur:
                    cur.timeout = self._config.sql_query_timeout_seconds
                    await cur.execute(query, params)
                    rowcount = cur.rowcount
                    if fetch:
                        rows = await cur.fetchall()
                        columns = [col[0] for col in cur.description]
            except Exception as exc:  # noqa: BLE001
                elapsed_ms = int((time.perf_counter() - started_at) * 1000)
                log.exception("SQL failed elapsed_ms=%s params=%s sql=%s", elapsed_ms, len(params), preview)
                raise InternalError("Storage query failed") from exc

        elapsed_ms = int((time.perf_counter() - started_at) * 1000)
        level = logging.WARNING if elapsed_ms >= _SLOW_QUERY_MS else logging.DEBUG
        log.log(
            level,
            "SQL done elapsed_ms=%s rows=%s rowcount=%s params=%s sql=%s",
            elapsed_ms,
            len(rows),
            rowcount,
            len(params),
            preview,
        )
        return rows, columns, rowcount

    @staticmethod
    def table_name(schema: str, table: str) -> str:
        if not _VALID_SQL_IDENT.match(schema) or not _VALID_SQL_IDENT.match(table):
            raise ValueError(f"Invalid schema/table name {schema}.{table}")
        return f"[{schema}].[{table}]"


def list_sql_server_drivers() -> list[str]:
    return [driver for driver in pyodbc.drivers() if "SQL Server" in driver]


def build_driver_candidates(preferred_driver: str) -> list[str]:
    """Configured driver first, then installed SQL Server drivers newest version first."""
    out: list[str] = []
    preferred = preferred_driver.strip()
    if preferred:
        out.append(preferred)
    for driver in sorted(list_sql_server_drivers(), key=_driver_rank, reverse=True):
        if driver not in out:
            out.append(driver)
    return out


def _driver_rank(driver: str) -> tuple[int, str]:
    match = _DRIVER_VERSION_PATTERN.match(driver.strip())
    return (int(match.group(1)), driver) if match else (-1, driver)


def _compact_sql(sql: str, *, max_chars: int) -> str:
    single_line = " ".join(sql.split())
    if len(single_line) <= max_chars:
        return single_line
    return f"{single_line[: max_chars - 3]}..."

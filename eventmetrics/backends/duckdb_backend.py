from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Tuple
from datetime import datetime
import asyncio
import os
import threading

import duckdb

from eventmetrics.backends.base import AnalyticsBackend, QueryErrorHook, logger, report_query_error
from eventmetrics.config import Settings, settings as default_settings
from eventmetrics.criteria import (
    APP_FILTER_FIELDS,
    CONTAINS,
    DESKTOP_KEY,
    EQUALS,
    GROUPED_FIELDS,
    HOST_EQUALS,
    INGEST_FILTER_FIELDS,
    MOBILE_KEY,
    MOBILE_SIGNALS,
    FilterField,
    active_filters,
    host_match_pattern,
    utm_column,
)
from eventmetrics.resolver import resolve_storage_unit
from eventmetrics.schemas import (
    Application,
    CountRow,
    GroupingCount,
    IngestEndpoint,
    PageFilter,
    QueryOptions,
    RangedResult,
    StorageProvider,
    StorageProviderConfig,
    TrackedEntity,
    UsageCount,
    UtmDimension,
)
from eventmetrics.timeutil import as_utc_naive, now_utc
from eventmetrics.windowing import (
    REFERRER_HOST_PATTERN,
    get_format_for_time_slice,
    include_buffer,
    partition_window,
    round_half_up,
    with_range,
)

EVENT_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("dt", "TIMESTAMP"),
    ("partition_date", "DATE"),
    ("user_hash", "VARCHAR"),
    ("event", "VARCHAR"),
    ("event_group", "VARCHAR"),
    ("revision_id", "VARCHAR"),
    ("environment_id", "VARCHAR"),
    ("utm_source", "VARCHAR"),
    ("utm_medium", "VARCHAR"),
    ("utm_campaign", "VARCHAR"),
    ("utm_term", "VARCHAR"),
    ("utm_content", "VARCHAR"),
    ("user_country", "VARCHAR"),
    ("referrer_url", "VARCHAR"),
    ("page_url", "VARCHAR"),
    ("browser_name", "VARCHAR"),
    ("os_name", "VARCHAR"),
    ("device_name", "VARCHAR"),
    ("requests", "BIGINT"),
    ("bytes", "BIGINT"),
)


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def event_table_ddl(qualified_table: str) -> str:
    cols = ",\n  ".join(f"{name} {typ}" for name, typ in EVENT_COLUMNS)
    return f"CREATE TABLE IF NOT EXISTS {qualified_table} (\n  {cols}\n);"


def _signal_sql(column: str, match: str, value: str) -> str:
    col = f"coalesce({column}, '')"
    if match == CONTAINS:
        return f"contains({col}, {_sql_literal(value)})"
    return f"{col} = {_sql_literal(value)}"


MOBILE_TEST = "(" + " OR ".join(_signal_sql(s.column, s.match, s.value) for s in MOBILE_SIGNALS) + ")"

REFERRER_HOST_SQL = f"regexp_extract(referrer_url, {_sql_literal(REFERRER_HOST_PATTERN)}, 1)"

_GROUP_ORDER = 'ORDER BY user_count DESC, "key" ASC NULLS FIRST'


class DuckDBBackend(AnalyticsBackend):
    """Columnar warehouse backend: one partitioned table per storage unit inside ``dataset``.

    ``partition_date`` is assigned by the writer once a row leaves the
    streaming buffer; until then it is NULL.
    """

    def __init__(self, s: Optional[Settings] = None, on_query_error: Optional[QueryErrorHook] = None,
                 clock: Callable[[], datetime] = now_utc):
        self.s = s or default_settings
        self.db_path = self.s.duckdb_path
        self.dataset = self.s.dataset
        self._on_query_error = on_query_error
        self._clock = clock
        self._con: Optional[duckdb.DuckDBPyConnection] = None
        self._con_lock = threading.Lock()

    def get_storage_provider(self) -> StorageProvider:
        return StorageProvider.DUCKDB

    async def get_storage_provider_config(self) -> StorageProviderConfig:
        return StorageProviderConfig(
            config={
                "database_path": self.db_path,
                "data_set_name": self.dataset,
                "require_partition_filter_in_queries": True,
            },
            hint="Managed DuckDB warehouse",
        )

    async def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._con is not None:
            return self._con
        return await asyncio.to_thread(self._connect_once)

    def _connect_once(self) -> duckdb.DuckDBPyConnection:
        # callers may come from different event loops over the backend lifetime
        with self._con_lock:
            if self._con is None:
                self._con = self._connect()
            return self._con

    def _connect(self) -> duckdb.DuckDBPyConnection:
        if self.db_path != ":memory:":
            os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        return duckdb.connect(self.db_path)

    async def configure(self) -> None:
        con = await self._get_connection()
        await asyncio.to_thread(con.execute, f"CREATE SCHEMA IF NOT EXISTS {_quote_ident(self.dataset)};")
        logger.info("dataset %s ready in %s", self.dataset, self.db_path)

    async def ensure_storage_unit(self, entity: TrackedEntity) -> str:
        """Create the entity's event table if the writer has not done so yet."""
        table = self.get_table(entity)
        await self.configure()
        con = await self._get_connection()
        await asyncio.to_thread(con.execute, event_table_ddl(table))
        return table

    async def close(self) -> None:
        with self._con_lock:
            con, self._con = self._con, None
        if con is not None:
            await asyncio.to_thread(con.close)

    def get_table(self, entity: TrackedEntity) -> str:
        return f"{_quote_ident(self.dataset)}.{_quote_ident(resolve_storage_unit(entity))}"

    def generate_range(self, options: QueryOptions) -> Tuple[str, Dict[str, Any]]:
        fo = options.filter_options
        partition_from, partition_to = partition_window(options)
        params = {
            "partition_from": partition_from,
            "partition_to": partition_to,
            "range_from": as_utc_naive(fo.from_),
            "range_to": as_utc_naive(fo.to),
        }
        partition_range = "partition_date >= $partition_from AND partition_date <= $partition_to"
        filter_range = "dt >= $range_from AND dt < $range_to"
        if include_buffer(fo.to, now=self._clock(), buffer_hours=self.s.buffer_hours):
            return f"(({partition_range}) OR partition_date IS NULL) AND {filter_range}", params
        return f"({partition_range} AND {filter_range})", params

    def _build_filter(self, options: QueryOptions, fields: Tuple[FilterField, ...],
                      with_mobile: bool) -> Tuple[str, Dict[str, Any]]:
        where, params = self.generate_range(options)
        clauses = [where]
        for field, value in active_filters(options.filter_options, fields):
            name = f"f_{field.option}"
            if field.match == EQUALS:
                clauses.append(f"{field.column} = ${name}")
            elif field.match == CONTAINS:
                clauses.append(f"contains({field.column}, ${name})")
            elif field.match == HOST_EQUALS:
                clauses.append(f"regexp_matches(referrer_url, ${name})")
                value = host_match_pattern(value)
            params[name] = value
        mobile = options.filter_options.mobile
        if with_mobile and mobile is True:
            clauses.append(MOBILE_TEST)
        elif with_mobile and mobile is False:
            clauses.append("NOT " + MOBILE_TEST)
        return " AND ".join(clauses), params

    def get_app_filter(self, options: QueryOptions) -> Tuple[str, Dict[str, Any]]:
        return self._build_filter(options, APP_FILTER_FIELDS, with_mobile=True)

    def get_ingest_endpoint_filter(self, options: QueryOptions) -> Tuple[str, Dict[str, Any]]:
        return self._build_filter(options, INGEST_FILTER_FIELDS, with_mobile=False)

    @staticmethod
    def _limit(options: QueryOptions) -> str:
        return f"LIMIT {int(options.limit)}"

    @staticmethod
    def _run(con: duckdb.DuckDBPyConnection, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        cur = con.cursor()
        try:
            cur.execute(sql, params)
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, r)) for r in cur.fetchall()]
        finally:
            cur.close()

    async def query(self, metric: str, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        con = await self._get_connection()
        try:
            return await asyncio.to_thread(self._run, con, sql.strip(), params)
        except Exception as e:
            report_query_error(metric, e, {"sql": sql.strip(), "params": params}, self._on_query_error)
            return []

    async def _grouping(self, metric: str, app: Application, options: QueryOptions, key_expr: str,
                        require_present: Optional[str] = None) -> RangedResult[List[GroupingCount]]:
        table = self.get_table(app)
        where, params = self.get_app_filter(options)
        if require_present is not None:
            where += f" AND {require_present} IS NOT NULL AND {require_present} <> ''"
        sql = f"""
            SELECT
              {key_expr} AS "key",
              count(DISTINCT coalesce(user_hash, '')) AS user_count,
              count(*) AS event_count
            FROM
              {table}
            WHERE
              {where}
            GROUP BY
              1
            {_GROUP_ORDER}
            {self._limit(options)}
        """
        rows = await self.query(metric, sql, params)
        return with_range(options, [GroupingCount(**r) for r in rows])

    async def _first_per_user(self, metric: str, app: Application, options: QueryOptions, value_expr: str,
                              latest: bool = False) -> RangedResult[List[GroupingCount]]:
        # Every filtered event of a user is attributed to the value picked from
        # their earliest (or latest) event.
        table = self.get_table(app)
        where, params = self.get_app_filter(options)
        pick = "arg_max" if latest else "arg_min"
        sql = f"""
            SELECT
              picked AS "key",
              count(*) AS user_count,
              sum(cnt) AS event_count
            FROM (
              SELECT
                coalesce(user_hash, '') AS user_key,
                {pick}(coalesce({value_expr}, ''), dt) AS picked,
                count(*) AS cnt
              FROM
                {table}
              WHERE
                {where}
              GROUP BY
                user_key
            ) AS per_user
            WHERE
              picked <> ''
            GROUP BY
              1
            {_GROUP_ORDER}
            {self._limit(options)}
        """
        rows = await self.query(metric, sql, params)
        return with_range(options, [GroupingCount(**r) for r in rows])

    async def average_session_duration(self, app: Application, options: QueryOptions) -> RangedResult[int]:
        table = self.get_table(app)
        where, params = self.get_app_filter(options)
        sql = f"""
            SELECT
              avg(time_diff) AS duration
            FROM (
              SELECT
                coalesce(user_hash, '') AS user_key,
                (epoch_ms(max(dt)) - epoch_ms(min(dt))) / 1000.0 AS time_diff
              FROM
                {table}
              WHERE
                {where}
              GROUP BY
                user_key
              HAVING
                max(dt) > min(dt)
            ) AS sessions
        """
        rows = await self.query("average_session_duration", sql, params)
        return with_range(options, round_half_up(rows[0]["duration"]) if rows else 0)

    async def bounce_ratio(self, app: Application, options: QueryOptions) -> RangedResult[int]:
        table = self.get_table(app)
        where, params = self.get_app_filter(options)
        sql = f"""
            SELECT
              avg(CASE WHEN cnt = 1 THEN 1.0 ELSE 0.0 END) AS bounce_ratio
            FROM (
              SELECT
                coalesce(user_hash, '') AS user_key,
                count(*) AS cnt
              FROM
                {table}
              WHERE
                {where}
              GROUP BY
                user_key
            ) AS per_user
        """
        rows = await self.query("bounce_ratio", sql, params)
        return with_range(options, round_half_up(rows[0]["bounce_ratio"]) if rows else 0)

    async def event_requests(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        fmt = get_format_for_time_slice(options.time_slice)
        return await self._grouping("event_requests", app, options, f"strftime(dt, {_sql_literal(fmt)})")

    async def referrers(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._first_per_user("referrers", app, options, "referrer_url")

    async def referrer_tlds(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._first_per_user("referrer_tlds", app, options, REFERRER_HOST_SQL)

    async def utms(self, app: Application, options: QueryOptions,
                   dimension: UtmDimension) -> RangedResult[List[GroupingCount]]:
        column = utm_column(dimension)
        return await self._grouping("utms", app, options, column, require_present=column)

    async def pages(self, app: Application, options: QueryOptions,
                    page_filter: Optional[PageFilter] = None) -> RangedResult[List[GroupingCount]]:
        if page_filter is None:
            return await self._grouping("pages", app, options, "page_url", require_present="page_url")
        latest = PageFilter(page_filter) == PageFilter.EXIT
        return await self._first_per_user("pages", app, options, "page_url", latest=latest)

    async def countries(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._simple("countries", app, options)

    async def devices(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        key_expr = f"CASE WHEN {MOBILE_TEST} THEN {_sql_literal(MOBILE_KEY)} ELSE {_sql_literal(DESKTOP_KEY)} END"
        return await self._grouping("devices", app, options, key_expr)

    async def event_groups(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._simple("event_groups", app, options)

    async def events(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._simple("events", app, options)

    async def browsers(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._simple("browsers", app, options)

    async def operating_systems(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._simple("operating_systems", app, options)

    async def _simple(self, metric: str, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        column, require_present = GROUPED_FIELDS[metric]
        return await self._grouping(metric, app, options, column,
                                    require_present=column if require_present else None)

    async def usage(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[UsageCount]]:
        fmt = get_format_for_time_slice(options.time_slice)
        table = self.get_table(endpoint)
        where, params = self.get_ingest_endpoint_filter(options)
        sql = f"""
            SELECT
              strftime(dt, {_sql_literal(fmt)}) AS "key",
              coalesce(sum(requests), 0) AS requests,
              coalesce(sum(bytes), 0) AS bytes
            FROM
              {table}
            WHERE
              {where}
            GROUP BY
              1
            ORDER BY
              "key" DESC
            {self._limit(options)}
        """
        rows = await self.query("usage", sql, params)
        return with_range(options, [UsageCount(**r) for r in rows])

    async def _ingest_sum(self, metric: str, endpoint: IngestEndpoint, options: QueryOptions,
                          column: str) -> RangedResult[List[CountRow]]:
        fmt = get_format_for_time_slice(options.time_slice)
        table = self.get_table(endpoint)
        where, params = self.get_ingest_endpoint_filter(options)
        sql = f"""
            SELECT
              strftime(dt, {_sql_literal(fmt)}) AS "key",
              coalesce(sum({column}), 0) AS "count"
            FROM
              {table}
            WHERE
              {where}
            GROUP BY
              1
            ORDER BY
              "key" DESC
            {self._limit(options)}
        """
        rows = await self.query(metric, sql, params)
        return with_range(options, [CountRow(**r) for r in rows])

    async def requests(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[CountRow]]:
        return await self._ingest_sum("requests", endpoint, options, "requests")

    async def bytes(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[CountRow]]:
        return await self._ingest_sum("bytes", endpoint, options, "bytes")

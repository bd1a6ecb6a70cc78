from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Tuple
from datetime import datetime, time, timezone
import re
import threading

from pymongo import AsyncMongoClient

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
from eventmetrics.timeutil import as_utc, now_utc
from eventmetrics.windowing import (
    REFERRER_HOST_PATTERN,
    get_format_for_time_slice,
    include_buffer,
    partition_window,
    round_half_up,
    with_range,
)

Pipeline = List[Dict[str, Any]]


def _signal_match(column: str, match: str, value: str) -> Dict[str, Any]:
    if match == CONTAINS:
        return {column: {"$regex": re.escape(value)}}
    return {column: value}


def _signal_expr(column: str, match: str, value: str) -> Dict[str, Any]:
    field = {"$ifNull": ["$" + column, ""]}
    if match == CONTAINS:
        return {"$regexMatch": {"input": field, "regex": re.escape(value)}}
    return {"$eq": [field, value]}


MOBILE_MATCH = [_signal_match(s.column, s.match, s.value) for s in MOBILE_SIGNALS]
MOBILE_EXPR = {"$or": [_signal_expr(s.column, s.match, s.value) for s in MOBILE_SIGNALS]}

REFERRER_HOST_EXPR = {
    "$let": {
        "vars": {"m": {"$regexFind": {"input": {"$ifNull": ["$referrer_url", ""]}, "regex": REFERRER_HOST_PATTERN}}},
        "in": {"$arrayElemAt": ["$$m.captures", 0]},
    }
}

USER_KEY = {"$ifNull": ["$user_hash", ""]}

_GROUP_SORT = {"$sort": {"user_count": -1, "key": 1}}


def _as_partition_dt(d) -> datetime:
    # BSON has no date type; writers store partition days as UTC midnight
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


class MongoBackend(AnalyticsBackend):
    """Document backend: one collection per storage unit, queried with aggregation pipelines."""

    def __init__(self, s: Optional[Settings] = None, on_query_error: Optional[QueryErrorHook] = None,
                 clock: Callable[[], datetime] = now_utc, client: Optional[AsyncMongoClient] = None):
        self.s = s or default_settings
        self.database_name = self.s.mongo_database
        self._on_query_error = on_query_error
        self._clock = clock
        self._client = client
        self._client_lock = threading.Lock()

    def get_storage_provider(self) -> StorageProvider:
        return StorageProvider.MONGODB

    async def get_storage_provider_config(self) -> StorageProviderConfig:
        return StorageProviderConfig(
            config={"connection_string": "", "database_name": self.database_name},
            hint="Managed MongoDB ingest storage",
        )

    async def _get_client(self) -> AsyncMongoClient:
        with self._client_lock:
            if self._client is None:
                self._client = AsyncMongoClient(self.s.mongo_url, tz_aware=True)
            return self._client

    async def configure(self) -> None:
        # databases and collections are created on first write
        logger.info("mongo database %s needs no provisioning", self.database_name)

    async def ensure_storage_unit(self, entity: TrackedEntity) -> str:
        name = resolve_storage_unit(entity)
        client = await self._get_client()
        coll = client[self.database_name][name]
        await coll.create_index([("dt", 1)])
        await coll.create_index([("partition_date", 1)])
        await coll.create_index([("user_hash", 1), ("dt", 1)])
        return name

    async def close(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            await client.close()

    def generate_range(self, options: QueryOptions) -> List[Dict[str, Any]]:
        fo = options.filter_options
        partition_from, partition_to = partition_window(options)
        partition_range = {"partition_date": {"$gte": _as_partition_dt(partition_from),
                                              "$lte": _as_partition_dt(partition_to)}}
        filter_range = {"dt": {"$gte": as_utc(fo.from_), "$lt": as_utc(fo.to)}}
        if include_buffer(fo.to, now=self._clock(), buffer_hours=self.s.buffer_hours):
            return [{"$or": [partition_range, {"partition_date": None}]}, filter_range]
        return [partition_range, filter_range]

    def _build_filter(self, options: QueryOptions, fields: Tuple[FilterField, ...],
                      with_mobile: bool) -> List[Dict[str, Any]]:
        clauses = self.generate_range(options)
        for field, value in active_filters(options.filter_options, fields):
            if field.match == EQUALS:
                clauses.append({field.column: value})
            elif field.match == CONTAINS:
                clauses.append({field.column: {"$regex": re.escape(value)}})
            elif field.match == HOST_EQUALS:
                clauses.append({field.column: {"$regex": host_match_pattern(value)}})
        mobile = options.filter_options.mobile
        if with_mobile and mobile is True:
            clauses.append({"$or": MOBILE_MATCH})
        elif with_mobile and mobile is False:
            clauses.append({"$nor": MOBILE_MATCH})
        return clauses

    def get_app_filter(self, options: QueryOptions) -> Dict[str, Any]:
        return {"$and": self._build_filter(options, APP_FILTER_FIELDS, with_mobile=True)}

    def get_ingest_endpoint_filter(self, options: QueryOptions) -> Dict[str, Any]:
        return {"$and": self._build_filter(options, INGEST_FILTER_FIELDS, with_mobile=False)}

    async def run_aggregation(self, metric: str, entity: TrackedEntity, pipeline: Pipeline) -> List[Dict[str, Any]]:
        name = resolve_storage_unit(entity)
        client = await self._get_client()
        try:
            cursor = await client[self.database_name][name].aggregate(pipeline)
            return await cursor.to_list(None)
        except Exception as e:
            report_query_error(metric, e, {"collection": name, "pipeline": pipeline}, self._on_query_error)
            return []

    def grouping_pipeline(self, options: QueryOptions, key_expr: Any,
                          require_present: Optional[str] = None) -> Pipeline:
        match = self.get_app_filter(options)
        if require_present is not None:
            match["$and"].append({require_present: {"$nin": [None, ""]}})
        return [
            {"$match": match},
            {"$group": {"_id": {"key": key_expr, "user_hash": USER_KEY}, "event_count": {"$sum": 1}}},
            {"$group": {"_id": "$_id.key", "user_count": {"$sum": 1}, "event_count": {"$sum": "$event_count"}}},
            {"$project": {"_id": 0, "key": "$_id", "user_count": 1, "event_count": 1}},
            _GROUP_SORT,
            {"$limit": options.limit},
        ]

    def per_user_pipeline(self, options: QueryOptions, value_expr: Any, latest: bool = False) -> Pipeline:
        # every filtered event of a user counts toward the value taken from
        # their earliest (or latest) event
        pick = "$last" if latest else "$first"
        return [
            {"$match": self.get_app_filter(options)},
            {"$sort": {"dt": 1}},
            {"$group": {
                "_id": USER_KEY,
                "picked": {pick: {"$ifNull": [value_expr, ""]}},
                "event_count": {"$sum": 1},
            }},
            {"$match": {"picked": {"$ne": ""}}},
            {"$group": {"_id": "$picked", "user_count": {"$sum": 1}, "event_count": {"$sum": "$event_count"}}},
            {"$project": {"_id": 0, "key": "$_id", "user_count": 1, "event_count": 1}},
            _GROUP_SORT,
            {"$limit": options.limit},
        ]

    async def _grouped(self, metric: str, app: Application, pipeline: Pipeline,
                       options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        rows = await self.run_aggregation(metric, app, pipeline)
        return with_range(options, [GroupingCount(**r) for r in rows])

    async def average_session_duration(self, app: Application, options: QueryOptions) -> RangedResult[int]:
        pipeline = [
            {"$match": self.get_app_filter(options)},
            {"$group": {"_id": USER_KEY, "first": {"$min": "$dt"}, "last": {"$max": "$dt"}}},
            {"$project": {"_id": 0, "diff": {"$divide": [{"$subtract": ["$last", "$first"]}, 1000]}}},
            {"$match": {"diff": {"$gt": 0}}},
            {"$group": {"_id": None, "duration": {"$avg": "$diff"}}},
        ]
        rows = await self.run_aggregation("average_session_duration", app, pipeline)
        return with_range(options, round_half_up(rows[0]["duration"]) if rows else 0)

    async def bounce_ratio(self, app: Application, options: QueryOptions) -> RangedResult[int]:
        pipeline = [
            {"$match": self.get_app_filter(options)},
            {"$group": {"_id": USER_KEY, "count": {"$sum": 1}}},
            {"$group": {
                "_id": None,
                "bounce_ratio": {"$avg": {"$cond": [{"$eq": ["$count", 1]}, 1, 0]}},
            }},
        ]
        rows = await self.run_aggregation("bounce_ratio", app, pipeline)
        return with_range(options, round_half_up(rows[0]["bounce_ratio"]) if rows else 0)

    async def event_requests(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        key_expr = {"$dateToString": {"format": get_format_for_time_slice(options.time_slice), "date": "$dt"}}
        return await self._grouped("event_requests", app, self.grouping_pipeline(options, key_expr), options)

    async def referrers(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._grouped("referrers", app, self.per_user_pipeline(options, "$referrer_url"), options)

    async def referrer_tlds(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._grouped("referrer_tlds", app, self.per_user_pipeline(options, REFERRER_HOST_EXPR), options)

    async def utms(self, app: Application, options: QueryOptions,
                   dimension: UtmDimension) -> RangedResult[List[GroupingCount]]:
        column = utm_column(dimension)
        pipeline = self.grouping_pipeline(options, "$" + column, require_present=column)
        return await self._grouped("utms", app, pipeline, options)

    async def pages(self, app: Application, options: QueryOptions,
                    page_filter: Optional[PageFilter] = None) -> RangedResult[List[GroupingCount]]:
        if page_filter is None:
            pipeline = self.grouping_pipeline(options, "$page_url", require_present="page_url")
        else:
            latest = PageFilter(page_filter) == PageFilter.EXIT
            pipeline = self.per_user_pipeline(options, "$page_url", latest=latest)
        return await self._grouped("pages", app, pipeline, options)

    async def countries(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        return await self._simple("countries", app, options)

    async def devices(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]:
        key_expr = {"$cond": [MOBILE_EXPR, MOBILE_KEY, DESKTOP_KEY]}
        return await self._grouped("devices", app, self.grouping_pipeline(options, key_expr), options)

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
        pipeline = self.grouping_pipeline(options, "$" + column, require_present=column if require_present else None)
        return await self._grouped(metric, app, pipeline, options)

    def _bucket_key(self, options: QueryOptions) -> Dict[str, Any]:
        return {"$dateToString": {"format": get_format_for_time_slice(options.time_slice), "date": "$dt"}}

    async def usage(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[UsageCount]]:
        pipeline = [
            {"$match": self.get_ingest_endpoint_filter(options)},
            {"$group": {"_id": self._bucket_key(options), "requests": {"$sum": "$requests"}, "bytes": {"$sum": "$bytes"}}},
            {"$project": {"_id": 0, "key": "$_id", "requests": 1, "bytes": 1}},
            {"$sort": {"key": -1}},
            {"$limit": options.limit},
        ]
        rows = await self.run_aggregation("usage", endpoint, pipeline)
        return with_range(options, [UsageCount(**r) for r in rows])

    async def _ingest_sum(self, metric: str, endpoint: IngestEndpoint, options: QueryOptions,
                          field: str) -> RangedResult[List[CountRow]]:
        pipeline = [
            {"$match": self.get_ingest_endpoint_filter(options)},
            {"$group": {"_id": self._bucket_key(options), "count": {"$sum": "$" + field}}},
            {"$project": {"_id": 0, "key": "$_id", "count": 1}},
            {"$sort": {"key": -1}},
            {"$limit": options.limit},
        ]
        rows = await self.run_aggregation(metric, endpoint, pipeline)
        return with_range(options, [CountRow(**r) for r in rows])

    async def requests(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[CountRow]]:
        return await self._ingest_sum("requests", endpoint, options, "requests")

    async def bytes(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[CountRow]]:
        return await self._ingest_sum("bytes", endpoint, options, "bytes")

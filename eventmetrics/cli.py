from __future__ import annotations
import argparse, asyncio, logging
from datetime import timedelta
import orjson
import uvicorn

from eventmetrics.backends import get_backend
from eventmetrics.config import settings, Settings
from eventmetrics.criteria import APP_FILTER_FIELDS
from eventmetrics.schemas import (
    Application,
    FilterOptions,
    IngestEndpoint,
    PageFilter,
    QueryOptions,
    StorageProvider,
    TimeSlice,
    UtmDimension,
)
from eventmetrics.timeutil import now_utc, parse_dt

APP_METRICS = [
    "average_session_duration", "bounce_ratio", "event_requests", "referrers", "referrer_tlds", "utms",
    "pages", "countries", "devices", "event_groups", "events", "browsers", "operating_systems",
]
INGEST_METRICS = ["usage", "requests", "bytes"]


def _settings_from(args) -> Settings:
    return Settings(
        storage_provider=args.provider,
        duckdb_path=args.duckdb_path,
        dataset=args.dataset,
        mongo_url=args.mongo_url,
        mongo_database=args.mongo_database,
    )


def cmd_configure(args):
    async def _main():
        backend = get_backend(s=_settings_from(args))
        try:
            await backend.configure()
            cfg = await backend.get_storage_provider_config()
            print(orjson.dumps({"provider": backend.get_storage_provider().value, **cfg.model_dump()}).decode())
        finally:
            await backend.close()

    asyncio.run(_main())


def cmd_query(args):
    filters = {f.option: getattr(args, f.option) for f in APP_FILTER_FIELDS}
    filters["mobile"] = args.mobile
    now = now_utc()
    fo = FilterOptions(
        from_=parse_dt(args.from_ts) if args.from_ts else now - timedelta(days=7),
        to=parse_dt(args.to_ts) if args.to_ts else now,
        **filters,
    )
    options = QueryOptions(time_slice=TimeSlice(args.time_slice), filter_options=fo, limit=args.limit)

    async def _main():
        backend = get_backend(s=_settings_from(args))
        try:
            if args.metric in INGEST_METRICS:
                entity = IngestEndpoint(id=args.entity_id, org_id="", usage_binding_id=args.binding)
                return await getattr(backend, args.metric)(entity, options)
            entity = Application(id=args.entity_id, org_id="", usage_binding_id=args.binding)
            if args.metric == "utms":
                return await backend.utms(entity, options, UtmDimension(args.dimension))
            if args.metric == "pages":
                page_filter = PageFilter(args.page_filter) if args.page_filter else None
                return await backend.pages(entity, options, page_filter)
            return await getattr(backend, args.metric)(entity, options)
        finally:
            await backend.close()

    result = asyncio.run(_main())
    print(orjson.dumps(result.model_dump(by_alias=True, mode="json"), option=orjson.OPT_INDENT_2).decode())


def cmd_api(args):
    uvicorn.run("eventmetrics.api:app", host="0.0.0.0", port=args.port, reload=False)


def _add_storage_args(p):
    p.add_argument("--provider", choices=[sp.value for sp in StorageProvider], default=settings.storage_provider)
    p.add_argument("--duckdb-path", default=settings.duckdb_path)
    p.add_argument("--dataset", default=settings.dataset)
    p.add_argument("--mongo-url", default=settings.mongo_url)
    p.add_argument("--mongo-database", default=settings.mongo_database)


def main():
    p = argparse.ArgumentParser(prog="eventmetrics")
    p.add_argument("--log-level", default=settings.log_level)
    sub = p.add_subparsers(dest="cmd", required=True)

    c = sub.add_parser("configure")
    _add_storage_args(c)
    c.set_defaults(fn=cmd_configure)

    q = sub.add_parser("query")
    _add_storage_args(q)
    q.add_argument("metric", choices=APP_METRICS + INGEST_METRICS)
    q.add_argument("--entity-id", default="cli")
    q.add_argument("--binding", help="usage binding id of the tracked entity")
    q.add_argument("--from", dest="from_ts")
    q.add_argument("--to", dest="to_ts")
    q.add_argument("--time-slice", choices=[t.value for t in TimeSlice], default=TimeSlice.DAY.value)
    q.add_argument("--limit", type=int, default=settings.default_limit)
    q.add_argument("--dimension", choices=[d.value for d in UtmDimension], default=UtmDimension.SOURCE.value)
    q.add_argument("--page-filter", choices=[pf.value for pf in PageFilter])
    for f in APP_FILTER_FIELDS:
        q.add_argument("--" + f.option.replace("_", "-"), dest=f.option)
    q.add_argument("--mobile", action=argparse.BooleanOptionalAction, default=None)
    q.set_defaults(fn=cmd_query)

    a = sub.add_parser("api")
    a.add_argument("--port", type=int, default=8000)
    a.set_defaults(fn=cmd_api)

    args = p.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args.fn(args)


if __name__ == "__main__":
    main()

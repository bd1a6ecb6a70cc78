from __future__ import annotations
from typing import Any, Dict, Optional
from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import ValidationError

from eventmetrics.backends import AnalyticsBackend, get_backend
from eventmetrics.config import settings
from eventmetrics.errors import AnalyticsConfigError
from eventmetrics.schemas import (
    Application,
    FilterOptions,
    IngestEndpoint,
    PageFilter,
    QueryOptions,
    TimeSlice,
    UtmDimension,
)
from eventmetrics.timeutil import parse_dt

app = FastAPI(title="Event Metrics API", version="0.1.0")

backend = get_backend()

APP_METRICS = {
    "average_session_duration",
    "bounce_ratio",
    "event_requests",
    "referrers",
    "referrer_tlds",
    "utms",
    "pages",
    "countries",
    "devices",
    "event_groups",
    "events",
    "browsers",
    "operating_systems",
}
INGEST_METRICS = {"usage", "requests", "bytes"}


def get_metrics_backend() -> AnalyticsBackend:
    return backend


def _query_options(from_ts: str, to_ts: str, time_slice: TimeSlice, limit: int, **filters: Any) -> QueryOptions:
    try:
        fo = FilterOptions(from_=parse_dt(from_ts), to=parse_dt(to_ts), **filters)
        return QueryOptions(time_slice=time_slice, filter_options=fo, limit=limit)
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))


def _dump(result) -> Dict[str, Any]:
    return result.model_dump(by_alias=True, mode="json")


@app.get("/health")
async def health(b: AnalyticsBackend = Depends(get_metrics_backend)):
    return {"ok": True, "provider": b.get_storage_provider().value}


@app.get("/v1/storage-provider")
async def storage_provider(b: AnalyticsBackend = Depends(get_metrics_backend)):
    cfg = await b.get_storage_provider_config()
    return {"provider": b.get_storage_provider().value, **cfg.model_dump()}


@app.get("/v1/apps/{app_id}/{metric}")
async def app_metric(
    app_id: str,
    metric: str,
    usage_binding_id: Optional[str] = Query(None),
    from_ts: str = Query(..., alias="from"),
    to_ts: str = Query(..., alias="to"),
    time_slice: TimeSlice = Query(TimeSlice.DAY),
    limit: int = Query(settings.default_limit, ge=1),
    dimension: Optional[UtmDimension] = Query(None),
    page_filter: Optional[PageFilter] = Query(None),
    revision: Optional[str] = Query(None),
    environment: Optional[str] = Query(None),
    event: Optional[str] = Query(None),
    event_group: Optional[str] = Query(None),
    utm_source: Optional[str] = Query(None),
    utm_medium: Optional[str] = Query(None),
    utm_campaign: Optional[str] = Query(None),
    utm_term: Optional[str] = Query(None),
    utm_content: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
    referrer: Optional[str] = Query(None),
    referrer_tld: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    mobile: Optional[bool] = Query(None),
    browser: Optional[str] = Query(None),
    os: Optional[str] = Query(None),
    b: AnalyticsBackend = Depends(get_metrics_backend),
):
    if metric not in APP_METRICS:
        raise HTTPException(status_code=404, detail=f"unknown metric {metric}")
    options = _query_options(
        from_ts, to_ts, time_slice, limit,
        revision=revision, environment=environment, event=event, event_group=event_group,
        utm_source=utm_source, utm_medium=utm_medium, utm_campaign=utm_campaign,
        utm_term=utm_term, utm_content=utm_content, country=country, referrer=referrer,
        referrer_tld=referrer_tld, page=page, mobile=mobile, browser=browser, os=os,
    )
    entity = Application(id=app_id, org_id="", usage_binding_id=usage_binding_id)
    try:
        if metric == "utms":
            if dimension is None:
                raise HTTPException(status_code=400, detail="utms requires a dimension")
            result = await b.utms(entity, options, dimension)
        elif metric == "pages":
            result = await b.pages(entity, options, page_filter)
        else:
            result = await getattr(b, metric)(entity, options)
    except AnalyticsConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _dump(result)


@app.get("/v1/ingest/{endpoint_id}/{metric}")
async def ingest_metric(
    endpoint_id: str,
    metric: str,
    usage_binding_id: Optional[str] = Query(None),
    from_ts: str = Query(..., alias="from"),
    to_ts: str = Query(..., alias="to"),
    time_slice: TimeSlice = Query(TimeSlice.DAY),
    limit: int = Query(settings.default_limit, ge=1),
    revision: Optional[str] = Query(None),
    environment: Optional[str] = Query(None),
    b: AnalyticsBackend = Depends(get_metrics_backend),
):
    if metric not in INGEST_METRICS:
        raise HTTPException(status_code=404, detail=f"unknown metric {metric}")
    options = _query_options(from_ts, to_ts, time_slice, limit, revision=revision, environment=environment)
    entity = IngestEndpoint(id=endpoint_id, org_id="", usage_binding_id=usage_binding_id)
    try:
        result = await getattr(b, metric)(entity, options)
    except AnalyticsConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _dump(result)

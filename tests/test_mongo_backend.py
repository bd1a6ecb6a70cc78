from __future__ import annotations
import asyncio
from datetime import datetime, timezone
import pytest

from conftest import NOW, options
from eventmetrics.backends.mongo_backend import MOBILE_MATCH, MongoBackend
from eventmetrics.config import Settings
from eventmetrics.errors import MissingUsageBindingError, UnsupportedTimeSliceError, UnsupportedUtmDimensionError
from eventmetrics.schemas import Application, IngestEndpoint, PageFilter, StorageProvider, TimeSlice, UtmDimension


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    async def to_list(self, length=None):
        return list(self.rows)


class FakeCollection:
    def __init__(self):
        self.rows = []
        self.error = None
        self.pipelines = []
        self.indexes = []

    async def aggregate(self, pipeline):
        self.pipelines.append(pipeline)
        if self.error is not None:
            raise self.error
        return FakeCursor(self.rows)

    async def create_index(self, keys):
        self.indexes.append(keys)


class FakeDatabase(dict):
    def __missing__(self, name):
        self[name] = FakeCollection()
        return self[name]


class FakeClient(dict):
    closed = False

    def __missing__(self, name):
        self[name] = FakeDatabase()
        return self[name]

    async def close(self):
        self.closed = True


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def mongo(client, query_errors):
    return MongoBackend(Settings(mongo_database="s8"), client=client, clock=lambda: NOW,
                        on_query_error=lambda metric, exc: query_errors.append((metric, exc)))


def test_provider(mongo):
    assert mongo.get_storage_provider() == StorageProvider.MONGODB
    cfg = asyncio.run(mongo.get_storage_provider_config())
    assert cfg.config["database_name"] == "s8"


def test_grouping_rows_are_shaped_and_ranged(mongo, client, app):
    coll = client["s8"]["s8_app1"]
    coll.rows = [{"key": "US", "user_count": 2, "event_count": 5}, {"key": None, "user_count": 1, "event_count": 1}]
    res = asyncio.run(mongo.browsers(app, options()))
    assert [(g.key, g.user_count, g.event_count) for g in res.result] == [("US", 2, 5), (None, 1, 1)]
    assert res.to == datetime(2026, 3, 4, tzinfo=timezone.utc)

    pipeline = coll.pipelines[0]
    assert pipeline[0]["$match"]["$and"][0]["partition_date"]["$gte"] == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert pipeline[-2] == {"$sort": {"user_count": -1, "key": 1}}
    assert pipeline[-1] == {"$limit": 10000}


def test_filters_become_and_clauses(mongo):
    match = mongo.get_app_filter(options(country="US", referrer="a.b", referrer_tld="x.com", mobile=True))
    clauses = match["$and"]
    assert {"user_country": "US"} in clauses
    assert {"referrer_url": {"$regex": r"a\.b"}} in clauses
    assert {"referrer_url": {"$regex": r"^https?://x\.com([/?#:]|$)"}} in clauses
    assert {"$or": MOBILE_MATCH} in clauses

    clauses = mongo.get_app_filter(options(mobile=False))["$and"]
    assert {"$nor": MOBILE_MATCH} in clauses
    assert len(mongo.get_app_filter(options())["$and"]) == 2


def test_ingest_filter_ignores_app_fields(mongo):
    clauses = mongo.get_ingest_endpoint_filter(options(revision="r1", country="US", mobile=True))["$and"]
    assert {"revision_id": "r1"} in clauses
    assert len(clauses) == 3


def test_streaming_buffer_included_for_recent_windows(mongo):
    recent = options(frm=datetime(2026, 3, 10, tzinfo=timezone.utc), to=datetime(2026, 3, 10, 11, tzinfo=timezone.utc))
    first = mongo.generate_range(recent)[0]
    assert first["$or"][1] == {"partition_date": None}
    assert "$or" not in mongo.generate_range(options())[0]


def test_presence_rules(mongo, client, app):
    coll = client["s8"]["s8_app1"]

    async def _main():
        await mongo.utms(app, options(), UtmDimension.MEDIUM)
        await mongo.countries(app, options())
        await mongo.events(app, options())
    asyncio.run(_main())
    utm_match, country_match, event_match = (p[0]["$match"]["$and"] for p in coll.pipelines)
    assert utm_match[-1] == {"utm_medium": {"$nin": [None, ""]}}
    assert country_match[-1] == {"user_country": {"$nin": [None, ""]}}
    assert not any("event" in c for c in event_match)


def test_entry_and_exit_pages_sort_ascending(mongo, client, app):
    coll = client["s8"]["s8_app1"]

    async def _main():
        await mongo.pages(app, options(), PageFilter.ENTRY)
        await mongo.pages(app, options(), PageFilter.EXIT)
    asyncio.run(_main())
    entry, exit_ = coll.pipelines
    assert entry[1] == {"$sort": {"dt": 1}} and exit_[1] == {"$sort": {"dt": 1}}
    assert "$first" in entry[2]["$group"]["picked"]
    assert "$last" in exit_[2]["$group"]["picked"]
    assert entry[3] == {"$match": {"picked": {"$ne": ""}}}


def test_scalar_metrics_round_half_up(mongo, client, app):
    coll = client["s8"]["s8_app1"]
    coll.rows = [{"_id": None, "bounce_ratio": 0.5}]
    assert asyncio.run(mongo.bounce_ratio(app, options())).result == 1
    coll.rows = [{"_id": None, "duration": 2.5}]
    assert asyncio.run(mongo.average_session_duration(app, options())).result == 3
    coll.rows = []
    assert asyncio.run(mongo.bounce_ratio(app, options())).result == 0


def test_event_requests_time_slice_format(mongo, client, app):
    coll = client["s8"]["s8_app1"]
    asyncio.run(mongo.event_requests(app, options(time_slice=TimeSlice.HOUR)))
    key = coll.pipelines[0][1]["$group"]["_id"]["key"]
    assert key == {"$dateToString": {"format": "%Y-%m-%d %H:00:00", "date": "$dt"}}


def test_usage_rows(mongo, client):
    endpoint = IngestEndpoint(id="ie", org_id="o", usage_binding_id="ing1")
    coll = client["s8"]["s8_ing1"]
    coll.rows = [{"key": "2026-03-02", "requests": 1, "bytes": 10}]
    res = asyncio.run(mongo.usage(endpoint, options()))
    assert [(u.key, u.requests, u.bytes) for u in res.result] == [("2026-03-02", 1, 10)]
    assert coll.pipelines[0][-2] == {"$sort": {"key": -1}}
    coll.rows = [{"key": "2026-03-02", "count": 10}]
    assert asyncio.run(mongo.bytes(endpoint, options())).result[0].count == 10


def test_execution_errors_soft_fail(mongo, client, app, query_errors):
    client["s8"]["s8_app1"].error = RuntimeError("connection reset")
    assert asyncio.run(mongo.referrers(app, options())).result == []
    assert asyncio.run(mongo.average_session_duration(app, options())).result == 0
    assert [m for m, _ in query_errors] == ["referrers", "average_session_duration"]


def test_configuration_errors_are_raised(mongo, client, app, query_errors):
    with pytest.raises(MissingUsageBindingError):
        asyncio.run(mongo.events(Application(id="a", org_id="o"), options()))
    with pytest.raises(UnsupportedUtmDimensionError):
        asyncio.run(mongo.utms(app, options(), "TERM"))
    with pytest.raises(UnsupportedTimeSliceError):
        asyncio.run(mongo.usage(IngestEndpoint(id="e", org_id="o", usage_binding_id="e"),
                                options().model_copy(update={"time_slice": "WEEK"})))
    assert query_errors == []
    assert client["s8"]["s8_app1"].pipelines == []


def test_ensure_storage_unit_and_close(mongo, client, app):
    async def _main():
        name = await mongo.ensure_storage_unit(app)
        await mongo.close()
        return name
    assert asyncio.run(_main()) == "s8_app1"
    assert client["s8"]["s8_app1"].indexes[0] == [("dt", 1)]
    assert client.closed


def test_client_shared_across_event_loops(mongo, client, app, query_errors):
    client["s8"]["s8_app1"].rows = [{"key": "page_view", "user_count": 1, "event_count": 1}]

    async def _burst():
        results = await asyncio.gather(*(mongo.events(app, options()) for _ in range(3)))
        return [len(r.result) for r in results]
    assert asyncio.run(_burst()) == [1, 1, 1]
    assert asyncio.run(_burst()) == [1, 1, 1]
    assert query_errors == []

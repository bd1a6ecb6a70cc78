from __future__ import annotations
from datetime import datetime, timedelta, timezone
import duckdb
import pytest

from eventmetrics.backends.duckdb_backend import DuckDBBackend, event_table_ddl
from eventmetrics.config import Settings
from eventmetrics.schemas import Application, FilterOptions, IngestEndpoint, QueryOptions, TimeSlice

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)
D1 = datetime(2026, 3, 1, 10, 0, 0)

# A bounces with one event; B has two events a day apart; C is outside the window.
APP_ROWS = [
    dict(dt=D1, user_hash="A", event="page_view", page_url="/home",
         referrer_url="https://www.google.com/search?q=x", browser_name="Chrome", os_name="Windows",
         user_country="GB", utm_source="newsletter"),
    dict(dt=D1 + timedelta(minutes=5), user_hash="B", event="page_view", page_url="/pricing",
         referrer_url="https://news.ycombinator.com/item?id=1", browser_name="Mobile Safari", os_name="iOS",
         device_name="iPhone", user_country="US", utm_source=""),
    dict(dt=D1 + timedelta(days=1), user_hash="B", event="signup", event_group="conversion", page_url="/signup",
         referrer_url="", browser_name="Mobile Safari", os_name="iOS", device_name="iPhone", user_country="US"),
    dict(dt=datetime(2026, 2, 20, 9, 0, 0), user_hash="C", event="page_view", page_url="/home",
         referrer_url="https://bing.com/", browser_name="Firefox", os_name="Linux", user_country="DE"),
]

USAGE_ROWS = [
    dict(dt=D1, requests=5, bytes=100, revision_id="r1"),
    dict(dt=D1 + timedelta(hours=1), requests=3, bytes=50, revision_id="r2"),
    dict(dt=D1 + timedelta(days=1), requests=1, bytes=10, revision_id="r1"),
]


def with_partition(rows):
    out = []
    for r in rows:
        r = dict(r)
        r.setdefault("partition_date", r["dt"].date())
        out.append(r)
    return out


def seed_duckdb(db_path: str, dataset: str, binding: str, rows) -> None:
    con = duckdb.connect(db_path)
    try:
        con.execute(f'CREATE SCHEMA IF NOT EXISTS "{dataset}"')
        table = f'"{dataset}"."s8_{binding}"'
        con.execute(event_table_ddl(table))
        for r in rows:
            cols = list(r.keys())
            con.execute(
                f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [r[c] for c in cols],
            )
    finally:
        con.close()


def options(frm=datetime(2026, 3, 1, tzinfo=timezone.utc), to=datetime(2026, 3, 4, tzinfo=timezone.utc),
            time_slice=TimeSlice.DAY, limit=10000, **filters) -> QueryOptions:
    return QueryOptions(time_slice=time_slice, limit=limit,
                        filter_options=FilterOptions(from_=frm, to=to, **filters))


@pytest.fixture
def app():
    return Application(id="app-1", org_id="org-1", usage_binding_id="app1")


@pytest.fixture
def endpoint():
    return IngestEndpoint(id="ie-1", org_id="org-1", usage_binding_id="ing1")


@pytest.fixture
def duck_settings(tmp_path):
    return Settings(duckdb_path=str(tmp_path / "analytics.duckdb"), dataset="s8_test")


@pytest.fixture
def query_errors():
    return []


@pytest.fixture
def duck(duck_settings, query_errors):
    seed_duckdb(duck_settings.duckdb_path, duck_settings.dataset, "app1", with_partition(APP_ROWS))
    seed_duckdb(duck_settings.duckdb_path, duck_settings.dataset, "ing1", with_partition(USAGE_ROWS))
    return DuckDBBackend(duck_settings, on_query_error=lambda metric, exc: query_errors.append((metric, exc)),
                         clock=lambda: NOW)

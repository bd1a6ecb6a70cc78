from __future__ import annotations
from typing import Optional

from eventmetrics.backends.base import AnalyticsBackend, QueryErrorHook
from eventmetrics.config import Settings, settings as default_settings
from eventmetrics.schemas import StorageProvider


def get_backend(provider: Optional[StorageProvider] = None, s: Optional[Settings] = None,
                on_query_error: Optional[QueryErrorHook] = None) -> AnalyticsBackend:
    s = s or default_settings
    provider = StorageProvider(provider or s.storage_provider)
    if provider == StorageProvider.DUCKDB:
        from eventmetrics.backends.duckdb_backend import DuckDBBackend
        return DuckDBBackend(s, on_query_error=on_query_error)
    if provider == StorageProvider.MONGODB:
        from eventmetrics.backends.mongo_backend import MongoBackend
        return MongoBackend(s, on_query_error=on_query_error)
    raise ValueError(f"unknown storage provider {provider}")


__all__ = ["AnalyticsBackend", "QueryErrorHook", "get_backend"]

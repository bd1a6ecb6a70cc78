from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional
import logging

import orjson

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
    UsageCount,
    UtmDimension,
)

logger = logging.getLogger("eventmetrics")

QueryErrorHook = Callable[[str, BaseException], None]


def report_query_error(metric: str, exc: BaseException, query: Any, hook: Optional[QueryErrorHook]) -> None:
    """Log a failed execution and hand it to the operator hook, if any.

    The caller still gets an empty result, so this is the only place a masked
    failure is visible.
    """
    logger.exception("query for %s failed", metric)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("failed query: %s", orjson.dumps(query, default=str).decode("utf-8"))
    if hook is not None:
        try:
            hook(metric, exc)
        except Exception:
            logger.exception("query error hook raised for %s", metric)


class AnalyticsBackend(ABC):
    """Operations every storage engine must answer identically."""

    @abstractmethod
    def get_storage_provider(self) -> StorageProvider: ...

    @abstractmethod
    async def get_storage_provider_config(self) -> StorageProviderConfig: ...

    @abstractmethod
    async def configure(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def average_session_duration(self, app: Application, options: QueryOptions) -> RangedResult[int]: ...

    @abstractmethod
    async def bounce_ratio(self, app: Application, options: QueryOptions) -> RangedResult[int]: ...

    @abstractmethod
    async def event_requests(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def referrers(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def referrer_tlds(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def utms(self, app: Application, options: QueryOptions,
                   dimension: UtmDimension) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def pages(self, app: Application, options: QueryOptions,
                    page_filter: Optional[PageFilter] = None) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def countries(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def devices(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def event_groups(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def events(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def browsers(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def operating_systems(self, app: Application, options: QueryOptions) -> RangedResult[List[GroupingCount]]: ...

    @abstractmethod
    async def usage(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[UsageCount]]: ...

    @abstractmethod
    async def requests(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[CountRow]]: ...

    @abstractmethod
    async def bytes(self, endpoint: IngestEndpoint, options: QueryOptions) -> RangedResult[List[CountRow]]: ...

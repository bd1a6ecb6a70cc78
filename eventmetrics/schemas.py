from __future__ import annotations
from enum import Enum
from typing import Any, ClassVar, Dict, Generic, Optional, TypeVar
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator

from eventmetrics.config import settings
from eventmetrics.timeutil import as_utc


class TimeSlice(str, Enum):
    YEAR = "YEAR"
    MONTH = "MONTH"
    DAY = "DAY"
    HOUR = "HOUR"
    MINUTE = "MINUTE"


class UtmDimension(str, Enum):
    MEDIUM = "MEDIUM"
    SOURCE = "SOURCE"
    CAMPAIGN = "CAMPAIGN"


class PageFilter(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class StorageProvider(str, Enum):
    DUCKDB = "DUCKDB"
    MONGODB = "MONGODB"


class StorageProviderConfig(BaseModel):
    config: Dict[str, Any] = Field(default_factory=dict)
    hint: str


class TrackedEntity(BaseModel):
    kind: ClassVar[str] = "TrackedEntity"

    id: str
    org_id: str
    usage_binding_id: Optional[str] = None


class Application(TrackedEntity):
    kind: ClassVar[str] = "Application"


class IngestEndpoint(TrackedEntity):
    kind: ClassVar[str] = "IngestEndpoint"


class FilterOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(alias="from")
    to: datetime

    revision: Optional[str] = None
    environment: Optional[str] = None
    event: Optional[str] = None
    event_group: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    country: Optional[str] = None
    referrer: Optional[str] = None
    referrer_tld: Optional[str] = None
    page: Optional[str] = None
    mobile: Optional[bool] = None
    browser: Optional[str] = None
    os: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self) -> "FilterOptions":
        if as_utc(self.to) < as_utc(self.from_):
            raise ValueError("filter window must satisfy from <= to")
        return self


class QueryOptions(BaseModel):
    time_slice: TimeSlice = TimeSlice.DAY
    filter_options: FilterOptions
    limit: int = Field(default_factory=lambda: settings.default_limit, gt=0)


class GroupingCount(BaseModel):
    key: Optional[str] = None
    user_count: int
    event_count: int


class UsageCount(BaseModel):
    key: str
    requests: int = 0
    bytes: int = 0


class CountRow(BaseModel):
    key: str
    count: int = 0


ResultT = TypeVar("ResultT")


class RangedResult(BaseModel, Generic[ResultT]):
    """A metric result echoed with the window the caller asked for."""

    model_config = ConfigDict(populate_by_name=True)

    result: ResultT
    from_: datetime = Field(alias="from")
    to: datetime

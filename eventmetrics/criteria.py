from __future__ import annotations
from dataclasses import dataclass
import re
from typing import Any, List, Tuple

from eventmetrics.errors import UnsupportedUtmDimensionError
from eventmetrics.schemas import FilterOptions, UtmDimension

EQUALS = "equals"
CONTAINS = "contains"
HOST_EQUALS = "host_equals"

MOBILE_KEY = "Mobile"
DESKTOP_KEY = "Desktop"


@dataclass(frozen=True)
class FilterField:
    option: str
    column: str
    match: str = EQUALS


@dataclass(frozen=True)
class MobileSignal:
    column: str
    match: str
    value: str


APP_FILTER_FIELDS: Tuple[FilterField, ...] = (
    FilterField("revision", "revision_id"),
    FilterField("environment", "environment_id"),
    FilterField("event", "event"),
    FilterField("event_group", "event_group"),
    FilterField("utm_source", "utm_source"),
    FilterField("utm_medium", "utm_medium"),
    FilterField("utm_campaign", "utm_campaign"),
    FilterField("utm_term", "utm_term"),
    FilterField("utm_content", "utm_content"),
    FilterField("country", "user_country"),
    FilterField("page", "page_url", CONTAINS),
    FilterField("referrer", "referrer_url", CONTAINS),
    FilterField("referrer_tld", "referrer_url", HOST_EQUALS),
    FilterField("browser", "browser_name"),
    FilterField("os", "os_name"),
)

INGEST_FILTER_FIELDS: Tuple[FilterField, ...] = (
    FilterField("revision", "revision_id"),
    FilterField("environment", "environment_id"),
)

# A row is mobile when any signal matches.
MOBILE_SIGNALS: Tuple[MobileSignal, ...] = (
    MobileSignal("browser_name", CONTAINS, "Mobile"),
    MobileSignal("device_name", EQUALS, "iPhone"),
    MobileSignal("device_name", EQUALS, "iPad"),
    MobileSignal("os_name", EQUALS, "iOS"),
    MobileSignal("os_name", EQUALS, "Android"),
)

# metric -> (grouped column, require a non-empty value)
GROUPED_FIELDS = {
    "countries": ("user_country", True),
    "event_groups": ("event_group", True),
    "events": ("event", False),
    "browsers": ("browser_name", False),
    "operating_systems": ("os_name", False),
}

_UTM_COLUMNS = {
    UtmDimension.MEDIUM: "utm_medium",
    UtmDimension.SOURCE: "utm_source",
    UtmDimension.CAMPAIGN: "utm_campaign",
}


def active_filters(filter_options: FilterOptions, fields: Tuple[FilterField, ...]) -> List[Tuple[FilterField, Any]]:
    """Pairs of (field, value) for every option the caller actually set.

    ``None`` means "no clause"; an empty string is still a value.
    """
    out = []
    for f in fields:
        value = getattr(filter_options, f.option)
        if value is None:
            continue
        out.append((f, value))
    return out


def utm_column(dimension: Any) -> str:
    try:
        return _UTM_COLUMNS[UtmDimension(dimension)]
    except (ValueError, KeyError):
        raise UnsupportedUtmDimensionError(dimension) from None


def host_match_pattern(host: str) -> str:
    """Regex matching a referrer URL whose host is exactly ``host``."""
    return "^https?://" + re.escape(host) + "([/?#:]|$)"

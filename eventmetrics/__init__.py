from eventmetrics.backends import AnalyticsBackend, get_backend
from eventmetrics.errors import (
    AnalyticsConfigError,
    InvalidUsageBindingError,
    MissingUsageBindingError,
    UnsupportedTimeSliceError,
    UnsupportedUtmDimensionError,
)
from eventmetrics.schemas import (
    Application,
    CountRow,
    FilterOptions,
    GroupingCount,
    IngestEndpoint,
    PageFilter,
    QueryOptions,
    RangedResult,
    StorageProvider,
    StorageProviderConfig,
    TimeSlice,
    UsageCount,
    UtmDimension,
)

__version__ = "0.1.0"

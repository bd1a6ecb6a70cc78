from __future__ import annotations


class AnalyticsConfigError(ValueError):
    """Raised for caller or deployment mistakes. Never converted to an empty result."""


class MissingUsageBindingError(AnalyticsConfigError):
    def __init__(self, entity_kind: str, entity_id: str):
        super().__init__(f"Unable to find usage endpoint for {entity_kind}: {entity_id}")
        self.entity_kind = entity_kind
        self.entity_id = entity_id


class InvalidUsageBindingError(AnalyticsConfigError):
    pass


class UnsupportedTimeSliceError(AnalyticsConfigError):
    def __init__(self, time_slice):
        super().__init__(f"Unsupported time slice {time_slice}")
        self.time_slice = time_slice


class UnsupportedUtmDimensionError(AnalyticsConfigError):
    def __init__(self, dimension):
        super().__init__(f"UTM filter {dimension} is not currently supported")
        self.dimension = dimension

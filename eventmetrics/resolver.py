from __future__ import annotations
import re

from eventmetrics.errors import InvalidUsageBindingError, MissingUsageBindingError
from eventmetrics.schemas import TrackedEntity

STORAGE_UNIT_PREFIX = "s8_"

_BINDING_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def resolve_storage_unit(entity: TrackedEntity) -> str:
    """Name of the table/collection holding the entity's events and usage counters."""
    binding = entity.usage_binding_id
    if binding is None:
        raise MissingUsageBindingError(entity.kind, entity.id)
    if not _BINDING_RE.match(binding):
        raise InvalidUsageBindingError(f"Invalid usage binding id for {entity.kind} {entity.id}: {binding!r}")
    return f"{STORAGE_UNIT_PREFIX}{binding}"

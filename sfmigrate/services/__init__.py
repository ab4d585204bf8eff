"""Service layer for the migration engine."""

from .cache import RecordCache
from .field_resolver import FieldResolver
from .hooks import HookDispatcher, HookEvent, HookEventName
from .mapping import MappingResolver, ObjectMapping
from .record_filter import compile_filter, filter_records
from .values import ValuesMapper, records_differ, values_equal

__all__ = [
    "RecordCache",
    "FieldResolver",
    "HookDispatcher",
    "HookEvent",
    "HookEventName",
    "MappingResolver",
    "ObjectMapping",
    "compile_filter",
    "filter_records",
    "ValuesMapper",
    "records_differ",
    "values_equal",
]

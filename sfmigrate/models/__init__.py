"""Data models for the migration engine."""

from .describe import LookupField, SFieldDescribe, SObjectDescribe
from .migration import (
    MigrationRun,
    MigrationStatus,
    MissingParentRecord,
    ObjectSetSummary,
    TaskState,
    TaskSummary,
    UpdateMode,
)
from .record import CrudResult, Record
from .script import (
    FieldMappingItem,
    Operation,
    PolymorphicLookup,
    Script,
    ScriptObject,
    ScriptObjectSet,
    ScriptOrg,
    ValueMappingItem,
)

__all__ = [
    "LookupField",
    "SFieldDescribe",
    "SObjectDescribe",
    "MigrationRun",
    "MigrationStatus",
    "MissingParentRecord",
    "ObjectSetSummary",
    "TaskState",
    "TaskSummary",
    "UpdateMode",
    "CrudResult",
    "Record",
    "FieldMappingItem",
    "Operation",
    "PolymorphicLookup",
    "Script",
    "ScriptObject",
    "ScriptObjectSet",
    "ScriptOrg",
    "ValueMappingItem",
]

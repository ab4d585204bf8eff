"""Declarative migration script: orgs, object sets and script objects."""

import csv
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..config import Settings, get_settings
from ..constants import (
    CSV_FILE_MEDIA,
    DEFAULT_BULK_API_THRESHOLD_RECORDS,
    DEFAULT_BULK_API_VERSION,
    DEFAULT_BULK_API_V1_BATCH_SIZE,
    DEFAULT_EXTERNAL_IDS,
    DEFAULT_GROUP_QUERY,
    DEFAULT_USER_QUERY,
    GROUP_OBJECT_NAME,
    ID_FIELD_NAME,
    SPECIAL_OBJECTS,
    USER_OBJECT_NAME,
)
from ..exceptions import ConfigurationError
from ..soql import SoqlQuery, parse_query
from .describe import LookupField, SObjectDescribe

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """Per-object operation."""
    INSERT = "Insert"
    UPDATE = "Update"
    UPSERT = "Upsert"
    READONLY = "Readonly"
    DELETE = "Delete"
    DELETE_SOURCE = "DeleteSource"
    DELETE_HIERARCHY = "DeleteHierarchy"
    HARD_DELETE = "HardDelete"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "Operation":
        if isinstance(value, Operation):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return cls.UNKNOWN

    @property
    def is_delete(self) -> bool:
        return self in (
            Operation.DELETE,
            Operation.DELETE_SOURCE,
            Operation.DELETE_HIERARCHY,
            Operation.HARD_DELETE,
        )


@dataclass
class FieldMappingItem:
    """One entry of an object's field mapping.

    An entry with ``target_object`` renames the object; an entry with
    ``source_field``/``target_field`` renames a field.
    """
    target_object: Optional[str] = None
    source_field: Optional[str] = None
    target_field: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMappingItem":
        return cls(
            target_object=data.get("targetObject"),
            source_field=data.get("sourceField"),
            target_field=data.get("targetField"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.target_object:
            result["targetObject"] = self.target_object
        if self.source_field:
            result["sourceField"] = self.source_field
        if self.target_field:
            result["targetField"] = self.target_field
        return result


@dataclass
class PolymorphicLookup:
    """Hint that a lookup field is polymorphic, optionally narrowed to one type."""
    field_name: str
    referenced_object_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolymorphicLookup":
        return cls(
            field_name=data["fieldName"],
            referenced_object_type=data.get("referencedObjectType") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"fieldName": self.field_name}
        if self.referenced_object_type:
            result["referencedObjectType"] = self.referenced_object_type
        return result


@dataclass
class ValueMappingItem:
    """Raw value to target value rule for one field.

    A ``raw_value`` wrapped in slashes (``/^A.*$/``) is a regular expression.
    """
    object_name: str
    field_name: str
    raw_value: str
    value: Optional[str]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValueMappingItem":
        return cls(
            object_name=str(data.get("ObjectName", data.get("objectName", ""))).strip(),
            field_name=str(data.get("FieldName", data.get("fieldName", ""))).strip(),
            raw_value=str(data.get("RawValue", data.get("rawValue", "")) or "").strip(),
            value=data.get("Value", data.get("value")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "objectName": self.object_name,
            "fieldName": self.field_name,
            "rawValue": self.raw_value,
            "value": self.value,
        }


@dataclass
class ScriptOrg:
    """Endpoint descriptor: a live org or a directory of CSV files."""
    name: str
    instance_url: Optional[str] = None
    access_token: Optional[str] = None
    media: str = "org"
    directory: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptOrg":
        return cls(
            name=data["name"],
            instance_url=data.get("instanceUrl"),
            access_token=data.get("accessToken"),
            media=data.get("media", "org"),
            directory=data.get("directory"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "instanceUrl": self.instance_url,
            "media": self.media,
            "directory": self.directory,
        }

    @property
    def is_file_media(self) -> bool:
        return self.media == CSV_FILE_MEDIA

    @property
    def identity(self) -> str:
        if self.is_file_media:
            return f"{CSV_FILE_MEDIA}:{Path(self.directory or '.').resolve()}"
        return (self.instance_url or self.name).rstrip("/").lower()


@dataclass
class ScriptObject:
    """One migration unit: an object, its query and its operation."""
    query: str
    operation: Operation = Operation.READONLY
    external_id: str = ""
    delete_query: str = ""
    delete_old_data: bool = False
    delete_from_source: bool = False
    delete_by_hierarchy: bool = False
    hard_delete: bool = False
    excluded: bool = False
    use_field_mapping: bool = False
    field_mapping: List[FieldMappingItem] = field(default_factory=list)
    excluded_fields: List[str] = field(default_factory=list)
    excluded_from_update_fields: List[str] = field(default_factory=list)
    rest_api_batch_size: Optional[int] = None
    bulk_api_v1_batch_size: Optional[int] = None
    parallel_rest_jobs: Optional[int] = None
    parallel_bulk_jobs: Optional[int] = None
    always_use_rest_api: bool = False
    force_bulk_api: bool = False
    skip_existing_records: bool = False
    skip_records_comparison: bool = False
    use_values_mapping: bool = False
    use_csv_values_mapping: bool = False
    master: bool = True
    source_records_filter: str = ""
    target_records_filter: str = ""
    use_query_all: bool = False
    query_all_target: bool = False
    polymorphic_lookups: List[PolymorphicLookup] = field(default_factory=list)

    # Runtime state, filled by setup() and the field resolver
    name: str = field(default="", repr=False)
    original_operation: Operation = field(default=Operation.UNKNOWN, repr=False)
    parsed_query: Optional[SoqlQuery] = field(default=None, repr=False)
    is_auto_added: bool = field(default=False, repr=False)
    source_describe: Optional[SObjectDescribe] = field(default=None, repr=False)
    target_describe: Optional[SObjectDescribe] = field(default=None, repr=False)
    lookups: Dict[str, LookupField] = field(default_factory=dict, repr=False)
    fields_in_query: List[str] = field(default_factory=list, repr=False)
    fields_to_update: List[str] = field(default_factory=list, repr=False)
    target_fields_in_query: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptObject":
        """Create from an ``objects[]`` entry."""
        return cls(
            query=data.get("query", ""),
            operation=Operation.parse(data.get("operation", Operation.READONLY.value)),
            external_id=data.get("externalId") or "",
            delete_query=data.get("deleteQuery") or "",
            delete_old_data=data.get("deleteOldData", False),
            delete_from_source=data.get("deleteFromSource", False),
            delete_by_hierarchy=data.get("deleteByHierarchy", False),
            hard_delete=data.get("hardDelete", False),
            excluded=data.get("excluded", False),
            use_field_mapping=data.get("useFieldMapping", False),
            field_mapping=[FieldMappingItem.from_dict(m) for m in data.get("fieldMapping", [])],
            excluded_fields=list(data.get("excludedFields", [])),
            excluded_from_update_fields=list(data.get("excludedFromUpdateFields", [])),
            rest_api_batch_size=data.get("restApiBatchSize"),
            bulk_api_v1_batch_size=data.get("bulkApiV1BatchSize"),
            parallel_rest_jobs=data.get("parallelRestJobs"),
            parallel_bulk_jobs=data.get("parallelBulkJobs"),
            always_use_rest_api=data.get("alwaysUseRestApi", False),
            force_bulk_api=data.get("alwaysUseBulkApi", data.get("forceBulkApi", False)),
            skip_existing_records=data.get("skipExistingRecords", False),
            skip_records_comparison=data.get("skipRecordsComparison", False),
            use_values_mapping=data.get("useValuesMapping", False),
            use_csv_values_mapping=data.get("useCSVValuesMapping", False),
            master=data.get("master", True),
            source_records_filter=data.get("sourceRecordsFilter") or "",
            target_records_filter=data.get("targetRecordsFilter") or "",
            use_query_all=data.get("useQueryAll", False),
            query_all_target=data.get("queryAllTarget", False),
            polymorphic_lookups=[PolymorphicLookup.from_dict(p) for p in data.get("polymorphicLookups", [])],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "operation": self.operation.value,
            "externalId": self.external_id,
            "deleteQuery": self.delete_query,
            "deleteOldData": self.delete_old_data,
            "excluded": self.excluded,
            "useFieldMapping": self.use_field_mapping,
            "fieldMapping": [m.to_dict() for m in self.field_mapping],
            "excludedFields": self.excluded_fields,
            "excludedFromUpdateFields": self.excluded_from_update_fields,
            "restApiBatchSize": self.rest_api_batch_size,
            "bulkApiV1BatchSize": self.bulk_api_v1_batch_size,
            "parallelRestJobs": self.parallel_rest_jobs,
            "parallelBulkJobs": self.parallel_bulk_jobs,
            "alwaysUseRestApi": self.always_use_rest_api,
            "alwaysUseBulkApi": self.force_bulk_api,
            "skipExistingRecords": self.skip_existing_records,
            "skipRecordsComparison": self.skip_records_comparison,
            "useValuesMapping": self.use_values_mapping,
            "master": self.master,
            "sourceRecordsFilter": self.source_records_filter,
            "targetRecordsFilter": self.target_records_filter,
            "useQueryAll": self.use_query_all,
            "queryAllTarget": self.query_all_target,
            "polymorphicLookups": [p.to_dict() for p in self.polymorphic_lookups],
        }

    # ---- Normalization ----

    def setup(self) -> None:
        """
        Parse the query and normalize the operation.

        Raises:
            ConfigurationError: malformed query or invalid operation
        """
        self.parsed_query = parse_query(self.query)
        self.name = self.parsed_query.object_name
        self.parsed_query.add_field(ID_FIELD_NAME)
        for excluded in self.excluded_fields:
            self.parsed_query.fields = [f for f in self.parsed_query.fields if f != excluded]

        if self.operation == Operation.UNKNOWN:
            raise ConfigurationError("Unknown operation", self.name)
        self.original_operation = self.operation

        if self.is_special:
            if self.operation != Operation.READONLY:
                logger.warning(f"{self.name}: operation {self.operation.value} is not allowed, forced to Readonly")
            self.operation = Operation.READONLY
            self.delete_old_data = False
            self.delete_from_source = False
            self.delete_by_hierarchy = False
            self.hard_delete = False
        elif self.operation == Operation.DELETE_SOURCE:
            self.operation = Operation.DELETE
            self.delete_from_source = True
        elif self.operation == Operation.DELETE_HIERARCHY:
            self.operation = Operation.DELETE
            self.delete_by_hierarchy = True
        elif self.operation == Operation.HARD_DELETE:
            self.operation = Operation.DELETE
            self.hard_delete = True

        if (self.operation == Operation.INSERT and not self.is_special) or self.delete_from_source:
            self.external_id = ID_FIELD_NAME
        if not self.external_id:
            self.external_id = DEFAULT_EXTERNAL_IDS.get(self.name, "")

    @property
    def target_object_name(self) -> str:
        if self.use_field_mapping:
            for item in self.field_mapping:
                if item.target_object:
                    return item.target_object
        return self.name

    @property
    def external_id_parts(self) -> List[str]:
        return [p.strip() for p in self.external_id.split(";") if p.strip()]

    @property
    def is_readonly(self) -> bool:
        return self.operation == Operation.READONLY

    @property
    def is_special(self) -> bool:
        return self.name in SPECIAL_OBJECTS

    @property
    def has_delete_query(self) -> bool:
        return bool(self.delete_query)

    @property
    def describe(self) -> Optional[SObjectDescribe]:
        return self.source_describe or self.target_describe

    @property
    def uses_values_mapping(self) -> bool:
        return self.use_values_mapping or self.use_csv_values_mapping

    @property
    def parent_lookup_objects(self) -> List[str]:
        """Parent object names of simple lookups, self references excluded."""
        names: List[str] = []
        for lookup in self.lookups.values():
            for parent in lookup.parent_names:
                if parent != self.name and parent not in names:
                    names.append(parent)
        return names

    @property
    def parent_master_detail_objects(self) -> List[str]:
        names: List[str] = []
        for lookup in self.lookups.values():
            if not lookup.master_detail:
                continue
            for parent in lookup.parent_names:
                if parent != self.name and parent not in names:
                    names.append(parent)
        return names

    def polymorphic_types_required(self) -> Set[str]:
        """User/Group types needed by this object's polymorphic lookups."""
        required: Set[str] = set()
        if self.parsed_query is not None:
            for type_name in self.parsed_query.polymorphic_types.values():
                if type_name in (USER_OBJECT_NAME, GROUP_OBJECT_NAME):
                    required.add(type_name)
        for hint in self.polymorphic_lookups:
            if hint.referenced_object_type:
                if hint.referenced_object_type in (USER_OBJECT_NAME, GROUP_OBJECT_NAME):
                    required.add(hint.referenced_object_type)
            else:
                required.update((USER_OBJECT_NAME, GROUP_OBJECT_NAME))
        return required

    def polymorphic_type_of(self, field_name: str) -> Optional[str]:
        if self.parsed_query is not None and field_name in self.parsed_query.polymorphic_types:
            return self.parsed_query.polymorphic_types[field_name]
        for hint in self.polymorphic_lookups:
            if hint.field_name == field_name and hint.referenced_object_type:
                return hint.referenced_object_type
        return None


@dataclass
class ScriptObjectSet:
    """Objects processed together as one ordered unit."""
    objects: List[ScriptObject] = field(default_factory=list)
    index: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "ScriptObjectSet":
        return cls(objects=[ScriptObject.from_dict(o) for o in data.get("objects", [])], index=index)

    def to_dict(self) -> Dict[str, Any]:
        return {"objects": [o.to_dict() for o in self.objects if not o.is_auto_added]}

    @property
    def active_objects(self) -> List[ScriptObject]:
        return [o for o in self.objects if not o.excluded]

    def get_object(self, name: str) -> Optional[ScriptObject]:
        for obj in self.active_objects:
            if obj.name == name:
                return obj
        return None

    def setup(self) -> None:
        seen: Set[str] = set()
        for obj in self.active_objects:
            obj.setup()
            if obj.name in seen:
                raise ConfigurationError(f"Object is declared more than once in object set {self.index}", obj.name)
            seen.add(obj.name)

    def expand_polymorphic_lookups(self) -> List[ScriptObject]:
        """
        Add the User/Group objects required by polymorphic lookups.

        Each missing object is synthesized with a minimal query, once per
        set. An object the user declared is never replaced.

        Returns:
            The objects that were added
        """
        required: Set[str] = set()
        for obj in self.active_objects:
            required.update(obj.polymorphic_types_required())

        added: List[ScriptObject] = []
        for type_name in (USER_OBJECT_NAME, GROUP_OBJECT_NAME):
            if type_name not in required or self.get_object(type_name) is not None:
                continue
            query = DEFAULT_USER_QUERY if type_name == USER_OBJECT_NAME else DEFAULT_GROUP_QUERY
            auto = ScriptObject(query=query, operation=Operation.READONLY)
            auto.is_auto_added = True
            auto.setup()
            self.objects.append(auto)
            added.append(auto)
            logger.info(f"{type_name}: added to object set {self.index} to resolve polymorphic lookups")
        return added


@dataclass
class Script:
    """Top level migration script (``export.json``)."""
    object_sets: List[ScriptObjectSet] = field(default_factory=list)
    orgs: List[ScriptOrg] = field(default_factory=list)
    source_org: Optional[str] = None
    target_org: Optional[str] = None
    api_version: Optional[str] = None
    rest_api_batch_size: Optional[int] = None
    bulk_api_v1_batch_size: int = DEFAULT_BULK_API_V1_BATCH_SIZE
    bulk_api_version: str = DEFAULT_BULK_API_VERSION
    bulk_threshold: int = DEFAULT_BULK_API_THRESHOLD_RECORDS
    parallel_rest_jobs: int = 1
    parallel_bulk_jobs: int = 1
    always_use_rest_api_to_update_records: bool = False
    all_or_none: bool = False
    simulation_mode: bool = False
    keep_object_order_while_execute: bool = False
    execute_tasks_in_parallel: bool = False
    polling_interval_ms: Optional[int] = None
    polling_timeout_ms: Optional[int] = None
    concurrency_mode: str = "Parallel"
    case_insensitive_external_ids: bool = False
    fail_on_missing_parent_records: bool = False
    source_records_cache: bool = False
    cache_directory: Optional[str] = None
    values_mapping: List[ValueMappingItem] = field(default_factory=list)
    base_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_path: Optional[str] = None) -> "Script":
        """Create from a parsed ``export.json``.

        A top-level ``objects`` list becomes the first object set, followed
        by any ``objectSets``.
        """
        object_sets: List[ScriptObjectSet] = []
        if data.get("objects"):
            object_sets.append(ScriptObjectSet.from_dict({"objects": data["objects"]}))
        for set_data in data.get("objectSets", []):
            object_sets.append(ScriptObjectSet.from_dict(set_data))
        for i, object_set in enumerate(object_sets):
            object_set.index = i

        return cls(
            object_sets=object_sets,
            orgs=[ScriptOrg.from_dict(o) for o in data.get("orgs", [])],
            source_org=data.get("sourceOrg"),
            target_org=data.get("targetOrg"),
            api_version=str(data["apiVersion"]) if data.get("apiVersion") else None,
            rest_api_batch_size=data.get("restApiBatchSize"),
            bulk_api_v1_batch_size=data.get("bulkApiV1BatchSize", DEFAULT_BULK_API_V1_BATCH_SIZE),
            bulk_api_version=str(data.get("bulkApiVersion", DEFAULT_BULK_API_VERSION)),
            bulk_threshold=data.get("bulkThreshold", DEFAULT_BULK_API_THRESHOLD_RECORDS),
            parallel_rest_jobs=data.get("parallelRestJobs", 1),
            parallel_bulk_jobs=data.get("parallelBulkJobs", 1),
            always_use_rest_api_to_update_records=data.get("alwaysUseRestApiToUpdateRecords", False),
            all_or_none=data.get("allOrNone", False),
            simulation_mode=data.get("simulationMode", False),
            keep_object_order_while_execute=data.get("keepObjectOrderWhileExecute", False),
            execute_tasks_in_parallel=data.get("executeTasksInParallel", False),
            polling_interval_ms=data.get("pollingIntervalMs"),
            polling_timeout_ms=data.get("pollingQueryTimeoutMs", data.get("pollingTimeoutMs")),
            concurrency_mode=data.get("concurrencyMode", "Parallel"),
            case_insensitive_external_ids=data.get("caseInsensitiveExternalIds", False),
            fail_on_missing_parent_records=data.get("failOnMissingParentRecords", False),
            source_records_cache=data.get("sourceRecordsCache", False),
            cache_directory=data.get("cacheDirectory"),
            values_mapping=[ValueMappingItem.from_dict(v) for v in data.get("valuesMapping", [])],
            base_path=base_path,
        )

    @classmethod
    def from_file(cls, path: str) -> "Script":
        """Load an ``export.json`` file.

        A ``ValueMapping.csv`` next to it is appended to ``values_mapping``.
        """
        file_path = Path(path)
        if file_path.is_dir():
            file_path = file_path / "export.json"
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Script file not found: {file_path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Script file is not valid JSON: {file_path}: {e}")
        script = cls.from_dict(data, base_path=str(file_path.parent))
        script.values_mapping.extend(_read_values_mapping_csv(file_path.parent / "ValueMapping.csv"))
        return script

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orgs": [o.to_dict() for o in self.orgs],
            "sourceOrg": self.source_org,
            "targetOrg": self.target_org,
            "apiVersion": self.api_version,
            "restApiBatchSize": self.rest_api_batch_size,
            "bulkApiV1BatchSize": self.bulk_api_v1_batch_size,
            "bulkApiVersion": self.bulk_api_version,
            "bulkThreshold": self.bulk_threshold,
            "parallelRestJobs": self.parallel_rest_jobs,
            "parallelBulkJobs": self.parallel_bulk_jobs,
            "alwaysUseRestApiToUpdateRecords": self.always_use_rest_api_to_update_records,
            "allOrNone": self.all_or_none,
            "simulationMode": self.simulation_mode,
            "keepObjectOrderWhileExecute": self.keep_object_order_while_execute,
            "executeTasksInParallel": self.execute_tasks_in_parallel,
            "pollingIntervalMs": self.polling_interval_ms,
            "pollingTimeoutMs": self.polling_timeout_ms,
            "objectSets": [s.to_dict() for s in self.object_sets],
            "valuesMapping": [v.to_dict() for v in self.values_mapping],
        }

    def get_all_objects(self) -> List[ScriptObject]:
        """All active objects of all object sets, in declaration order."""
        return [obj for object_set in self.object_sets for obj in object_set.active_objects]

    def add_object_to_first_set(self, obj: ScriptObject) -> ScriptObject:
        if not self.object_sets:
            self.object_sets.append(ScriptObjectSet(index=0))
        if obj.parsed_query is None:
            obj.setup()
        self.object_sets[0].objects.append(obj)
        return obj

    def get_org(self, name: Optional[str]) -> ScriptOrg:
        for org in self.orgs:
            if org.name == name:
                return org
        raise ConfigurationError(f"Org '{name}' is not defined in the script")

    def expand_polymorphic_lookups(self) -> List[ScriptObject]:
        added: List[ScriptObject] = []
        for object_set in self.object_sets:
            added.extend(object_set.expand_polymorphic_lookups())
        return added

    def apply_settings(self, settings: Settings) -> None:
        """Fill the API version and polling values the script leaves unset."""
        if not self.api_version:
            self.api_version = settings.api_version
        if self.polling_interval_ms is None:
            self.polling_interval_ms = settings.polling_interval_ms
        if self.polling_timeout_ms is None:
            self.polling_timeout_ms = settings.polling_timeout_ms

    def setup(self, settings: Optional[Settings] = None) -> List[str]:
        """
        Validate and normalize every object set.

        Args:
            settings: Process settings supplying unset defaults (the cached ones when omitted)

        Returns:
            Validation warnings

        Raises:
            ConfigurationError: on the first structural problem
        """
        self.apply_settings(settings or get_settings())
        if not self.object_sets or not self.get_all_objects():
            raise ConfigurationError("Script has no objects")
        for object_set in self.object_sets:
            object_set.setup()
        self.expand_polymorphic_lookups()
        return self.validate()

    def validate(self) -> List[str]:
        warnings: List[str] = []
        for obj in self.get_all_objects():
            if obj.use_values_mapping and obj.use_csv_values_mapping:
                warnings.append(
                    f"{obj.name}: both useValuesMapping and useCSVValuesMapping are set; "
                    f"set exactly one (useValuesMapping is used)"
                )
        try:
            float(self.bulk_api_version)
        except ValueError:
            raise ConfigurationError(f"Invalid bulkApiVersion: {self.bulk_api_version}")
        for warning in warnings:
            logger.warning(warning)
        return warnings


def _read_values_mapping_csv(path: Path) -> List[ValueMappingItem]:
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        return [ValueMappingItem.from_dict(row) for row in csv.DictReader(f)]

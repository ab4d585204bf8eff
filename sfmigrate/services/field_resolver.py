"""Attaches describe metadata and resolves external ids, lookups and field lists."""

import asyncio
import logging
from typing import Dict, List, Optional

from ..connections.base import BaseConnection
from ..constants import (
    DEFAULT_EXTERNAL_ID_FIELD_NAME,
    ID_FIELD_NAME,
    MAX_PARALLEL_REQUESTS,
    REFERENCED_FIELDS_MAP,
)
from ..exceptions import ConfigurationError
from ..models.describe import LookupField, SFieldDescribe, SObjectDescribe, relationship_name_for
from ..models.script import Operation, ScriptObject, ScriptObjectSet
from ..soql import ALL_FIELDS_KEYWORD, READONLY_FIELDS_KEYWORD, UPDATEABLE_FIELDS_KEYWORD, typeof_clause
from .mapping import MappingResolver

logger = logging.getLogger(__name__)

COMPOUND_FIELD_TYPES = ("address", "location")


class FieldResolver:
    """
    Prepares every object of an object set for execution.

    For each object: attaches source and target describes, resolves the
    effective external id, links lookups to their parent objects in the
    set, adds the parent external-id relationship paths to the query, and
    computes ``fields_in_query``, ``fields_to_update`` and the target side
    field list.
    """

    def __init__(
        self,
        mapping: MappingResolver,
        source_connection: BaseConnection,
        target_connection: BaseConnection,
        max_parallel_requests: int = MAX_PARALLEL_REQUESTS,
    ):
        self.mapping = mapping
        self.source_connection = source_connection
        self.target_connection = target_connection
        self.max_parallel_requests = max_parallel_requests

    async def resolve_object_set(self, object_set: ScriptObjectSet) -> None:
        """
        Resolve all active objects of a set.

        Raises:
            ConfigurationError: missing external id or metadata problems
        """
        objects = object_set.active_objects
        await self.describe_objects(objects)
        for obj in objects:
            if obj.describe is None:
                obj.source_describe = self.synthesize_describe(obj, object_set)
            self.expand_field_keywords(obj)
        for obj in objects:
            self.resolve_external_id(obj)
        for obj in objects:
            self.resolve_lookups(obj, object_set)
        for obj in objects:
            self.compute_fields(obj, object_set)
            logger.debug(f"{obj.name}: fields in query {obj.fields_in_query}, fields to update {obj.fields_to_update}")

    # ---- Metadata ----

    async def describe_objects(self, objects: List[ScriptObject]) -> None:
        semaphore = asyncio.Semaphore(self.max_parallel_requests)

        async def describe(obj: ScriptObject) -> None:
            async with semaphore:
                obj.source_describe = await self.source_connection.describe_sobject(obj.name)
                obj.target_describe = await self.target_connection.describe_sobject(
                    self.mapping.map_object_name_to_target(obj.name))

        await asyncio.gather(*(describe(obj) for obj in objects))

    @staticmethod
    def synthesize_describe(obj: ScriptObject, object_set: ScriptObjectSet) -> SObjectDescribe:
        """Metadata for objects neither endpoint can describe (file to file).

        Every queried field is treated as writable. ``XxxId`` is a lookup to
        ``Xxx`` when that object is in the set.
        """
        describe = SObjectDescribe(name=obj.name, is_described=False)
        for name in obj.parsed_query.fields + obj.external_id_parts:
            if "." in name or name.upper().startswith("TYPEOF ") or name in describe.fields:
                continue
            field = SFieldDescribe(object_name=obj.name, name=name, is_described=False)
            if name == ID_FIELD_NAME:
                field.creatable = field.updateable = False
            else:
                referenced = REFERENCED_FIELDS_MAP.get(name) or relationship_name_for(name)
                if referenced and not name.endswith("__c") and object_set.get_object(referenced):
                    field.lookup = True
                    field.reference_to = [referenced]
                    field.type = "reference"
            describe.fields[name] = field
        return describe

    @staticmethod
    def expand_field_keywords(obj: ScriptObject) -> None:
        """Replace ``all`` / ``readonly_false`` / ``readonly_true`` with describe fields."""
        query = obj.parsed_query
        if not query.keywords:
            return
        describe = obj.describe
        if describe is None or not describe.is_described:
            raise ConfigurationError("Field keywords require object metadata", obj.name)
        for field in describe.fields.values():
            if field.type in COMPOUND_FIELD_TYPES:
                continue
            if (ALL_FIELDS_KEYWORD in query.keywords
                    or (UPDATEABLE_FIELDS_KEYWORD in query.keywords and not field.readonly)
                    or (READONLY_FIELDS_KEYWORD in query.keywords and field.readonly)):
                if field.name not in obj.excluded_fields:
                    query.add_field(field.name)
        query.keywords = []

    # ---- External ids ----

    def resolve_external_id(self, obj: ScriptObject) -> None:
        """
        Determine and validate the effective external id.

        Configured value, then the platform default, then ``Name`` when the
        object has it. Upsert/Update without one is a configuration error;
        other operations fall back to ``Id``.
        """
        describe = obj.describe
        if not obj.external_id_parts:
            if describe is not None and describe.has_field(DEFAULT_EXTERNAL_ID_FIELD_NAME):
                obj.external_id = DEFAULT_EXTERNAL_ID_FIELD_NAME
            elif obj.operation in (Operation.UPSERT, Operation.UPDATE):
                raise ConfigurationError(
                    f"{obj.operation.value} requires an external id and none could be resolved", obj.name)
            else:
                obj.external_id = ID_FIELD_NAME

        for part in obj.external_id_parts:
            if "." in part or part == ID_FIELD_NAME:
                continue
            if not self._field_exists(obj, part):
                raise ConfigurationError(f"External id field '{part}' does not exist", obj.name)
            obj.parsed_query.add_field(part)

    @staticmethod
    def _field_exists(obj: ScriptObject, name: str) -> bool:
        described = [d for d in (obj.source_describe, obj.target_describe) if d is not None and d.is_described]
        if not described:
            return True
        return any(d.has_field(name) for d in described)

    # ---- Lookups ----

    def resolve_lookups(self, obj: ScriptObject, object_set: ScriptObjectSet) -> None:
        describe = obj.describe
        obj.lookups = {}
        for name in obj.parsed_query.fields:
            if "." in name or name.upper().startswith("TYPEOF ") or name == ID_FIELD_NAME:
                continue
            field = describe.get_field(name) if describe else None
            if field is None or not field.lookup:
                continue

            explicit = obj.polymorphic_type_of(name)
            candidates = [explicit] if explicit else list(field.reference_to)
            live = [c for c in candidates if object_set.get_object(c) is not None]
            if not live:
                logger.warning(f"{obj.name}.{name}: referenced object(s) {', '.join(candidates)} "
                               f"not in the object set, value copied as is")
                continue

            relationship = field.relationship_name or name
            paths: Dict[str, List[str]] = {}
            for parent_name in live:
                parent = object_set.get_object(parent_name)
                paths[parent_name] = [
                    f"{relationship}.{part}" for part in parent.external_id_parts if part != ID_FIELD_NAME
                ]
            obj.lookups[name] = LookupField(
                field_name=name,
                relationship_name=relationship,
                parent_names=live,
                external_id_paths=paths,
                polymorphic=len(live) > 1,
                master_detail=field.master_detail,
            )

    # ---- Field lists ----

    def compute_fields(self, obj: ScriptObject, object_set: ScriptObjectSet) -> None:
        """Fill fields_in_query, fields_to_update and target_fields_in_query."""
        fields: List[str] = []

        def add(name: str) -> None:
            if name not in fields:
                fields.append(name)

        for name in obj.parsed_query.fields:
            add(name)
        for lookup in obj.lookups.values():
            if lookup.polymorphic:
                by_type = {p: [path.split(".", 1)[1] for path in paths]
                           for p, paths in lookup.external_id_paths.items() if paths}
                if by_type:
                    add(typeof_clause(lookup.relationship_name, by_type))
            else:
                for path in lookup.query_paths():
                    add(path)
        obj.fields_in_query = fields

        target_object = self.mapping.map_object_name_to_target(obj.name)
        target_describe = obj.target_describe or obj.source_describe
        to_update: List[str] = []
        for name in obj.parsed_query.fields:
            if name == ID_FIELD_NAME or "." in name or name.upper().startswith("TYPEOF "):
                continue
            if name in obj.excluded_from_update_fields or name in obj.excluded_fields:
                continue
            if obj.operation == Operation.READONLY or obj.operation.is_delete:
                continue
            field = target_describe.get_field(self.mapping.map_field_name_to_target(obj.name, name)) \
                if target_describe else None
            if field is None and target_describe is not None and target_describe.is_described:
                logger.warning(f"{obj.name}.{name}: field does not exist on target {target_object}, not updated")
                continue
            if field is not None and field.readonly:
                continue
            to_update.append(name)
        obj.fields_to_update = to_update
        obj.target_fields_in_query = [self.map_path_to_target(obj, f, object_set) for f in fields]

    def map_path_to_target(self, obj: ScriptObject, path: str, object_set: ScriptObjectSet) -> str:
        """Map a query token of ``obj`` to target naming, walking relationship paths."""
        if path.upper().startswith("TYPEOF "):
            return path
        if "." not in path:
            return self.mapping.map_field_name_to_target(obj.name, path)
        head, _, tail = path.partition(".")
        mapped_head = self.mapping.map_field_name_to_target(obj.name, head)
        parent = self._parent_of_relationship(obj, head, object_set)
        if parent is None:
            return f"{mapped_head}.{tail}"
        return f"{mapped_head}.{self.map_path_to_target(parent, tail, object_set)}"

    @staticmethod
    def _parent_of_relationship(obj: ScriptObject, relationship: str, object_set: ScriptObjectSet) -> Optional[ScriptObject]:
        for lookup in obj.lookups.values():
            if lookup.relationship_name == relationship and not lookup.polymorphic:
                return object_set.get_object(lookup.parent_names[0])
        return None

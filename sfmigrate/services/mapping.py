"""Bidirectional object and field name mapping between source and target."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..constants import ID_FIELD_NAME, POLYMORPHIC_FIELD_SEPARATOR
from ..models.describe import relationship_name_for
from ..models.record import Record
from ..models.script import ScriptObject

logger = logging.getLogger(__name__)


@dataclass
class ObjectMapping:
    """Name translation for one object and its fields."""
    source_object: str
    target_object: str
    fields_to_target: Dict[str, str] = field(default_factory=dict)
    fields_to_source: Dict[str, str] = field(default_factory=dict)

    def add_field(self, source_field: str, target_field: str) -> None:
        if source_field == ID_FIELD_NAME or target_field == ID_FIELD_NAME:
            return
        self.fields_to_target[source_field] = target_field
        self.fields_to_source[target_field] = source_field


class MappingResolver:
    """
    Resolves object, field and record names between the two endpoints.

    Objects without a configured mapping translate to themselves. The ``Id``
    field is never mapped.
    """

    def __init__(self):
        self._by_source: Dict[str, ObjectMapping] = {}
        self._by_target: Dict[str, ObjectMapping] = {}

    def add_object_mapping(
        self,
        source_object: str,
        target_object: Optional[str] = None,
        fields: Optional[Dict[str, str]] = None,
    ) -> ObjectMapping:
        """
        Register a mapping for one object.

        A lookup field pair also maps the derived relationship names, so
        ``AccountId -> Company__c`` adds ``Account -> Company__r``.

        Args:
            source_object: Object name on the source side
            target_object: Object name on the target side (defaults to source)
            fields: Source field name to target field name

        Returns:
            The registered ObjectMapping
        """
        mapping = ObjectMapping(source_object=source_object, target_object=target_object or source_object)
        for source_field, target_field in (fields or {}).items():
            mapping.add_field(source_field, target_field)
            source_rel = relationship_name_for(source_field)
            target_rel = relationship_name_for(target_field)
            if source_rel and target_rel and source_rel != target_rel:
                mapping.fields_to_target.setdefault(source_rel, target_rel)
                mapping.fields_to_source.setdefault(target_rel, source_rel)
        self._by_source[mapping.source_object] = mapping
        self._by_target[mapping.target_object] = mapping
        return mapping

    def add_script_objects(self, objects: Iterable[ScriptObject]) -> None:
        for obj in objects:
            if not obj.use_field_mapping or not obj.field_mapping:
                continue
            fields = {
                item.source_field: item.target_field
                for item in obj.field_mapping
                if item.source_field and item.target_field
            }
            self.add_object_mapping(obj.name, obj.target_object_name, fields)
            logger.debug(f"{obj.name}: mapped to {obj.target_object_name} with {len(fields)} field(s)")

    def has_mapping(self, source_object: str) -> bool:
        return source_object in self._by_source

    # ---- Objects ----

    def map_object_name_to_target(self, name: str) -> str:
        mapping = self._by_source.get(name)
        return mapping.target_object if mapping else name

    def map_object_name_to_source(self, name: str) -> str:
        mapping = self._by_target.get(name)
        return mapping.source_object if mapping else name

    # ---- Fields ----

    def map_field_name_to_target(self, object_name: str, field_name: str) -> str:
        """Map a source field (or ``Field$Type`` marker, or dotted path head) to the target."""
        mapping = self._by_source.get(object_name)
        return self._map_field(field_name, mapping.fields_to_target if mapping else {},
                               self.map_object_name_to_target)

    def map_field_name_to_source(self, object_name: str, field_name: str) -> str:
        """Inverse of map_field_name_to_target; ``object_name`` is the target name."""
        mapping = self._by_target.get(object_name)
        return self._map_field(field_name, mapping.fields_to_source if mapping else {},
                               self.map_object_name_to_source)

    @staticmethod
    def _map_field(field_name: str, fields: Dict[str, str], map_type) -> str:
        if field_name == ID_FIELD_NAME:
            return field_name
        if POLYMORPHIC_FIELD_SEPARATOR in field_name:
            base, _, type_name = field_name.partition(POLYMORPHIC_FIELD_SEPARATOR)
            return f"{base}{POLYMORPHIC_FIELD_SEPARATOR}{map_type(type_name)}"
        if "." in field_name:
            head, _, tail = field_name.partition(".")
            return f"{fields.get(head, head)}.{tail}"
        return fields.get(field_name, field_name)

    def map_fields_to_target(self, object_name: str, field_names: Iterable[str]) -> List[str]:
        return [self.map_field_name_to_target(object_name, f) for f in field_names]

    # ---- Records ----

    def map_record_to_target(self, object_name: str, record: Dict) -> Record:
        """Rewrite record keys to target names; unmapped objects yield a copy."""
        if object_name not in self._by_source:
            return Record(record)
        return Record((self.map_field_name_to_target(object_name, k), v) for k, v in record.items())

    def map_record_to_source(self, object_name: str, record: Dict) -> Record:
        """Rewrite record keys to source names; ``object_name`` is the target name."""
        if object_name not in self._by_target:
            return Record(record)
        return Record((self.map_field_name_to_source(object_name, k), v) for k, v in record.items())

    def map_records_to_target(self, object_name: str, records: Iterable[Dict]) -> List[Record]:
        return [self.map_record_to_target(object_name, r) for r in records]

    def map_records_to_source(self, object_name: str, records: Iterable[Dict]) -> List[Record]:
        return [self.map_record_to_source(object_name, r) for r in records]

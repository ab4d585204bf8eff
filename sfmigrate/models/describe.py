"""Describe metadata for objects and fields."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..constants import COMPLEX_FIELDS_SEPARATOR, ID_FIELD_NAME


def relationship_name_for(field_name: str) -> Optional[str]:
    """
    Derive the relationship name of a lookup field.

    ``Parent__c`` becomes ``Parent__r`` and ``AccountId`` becomes ``Account``.
    Returns None when neither rule applies.
    """
    if field_name.endswith("__c"):
        return field_name[:-3] + "__r"
    if field_name.endswith(ID_FIELD_NAME) and len(field_name) > len(ID_FIELD_NAME):
        return field_name[:-len(ID_FIELD_NAME)]
    return None


@dataclass
class SFieldDescribe:
    """Metadata of one field of one object."""
    object_name: str
    name: str
    type: str = "string"
    label: str = ""
    creatable: bool = True
    updateable: bool = True
    calculated: bool = False
    auto_number: bool = False
    lookup: bool = False
    reference_to: List[str] = field(default_factory=list)
    relationship: Optional[str] = None
    length: int = 0
    custom: bool = False
    name_field: bool = False
    external_id: bool = False
    unique: bool = False
    master_detail: bool = False
    is_described: bool = True

    @classmethod
    def from_dict(cls, object_name: str, data: Dict[str, Any]) -> "SFieldDescribe":
        """Build from one entry of a remote describe ``fields`` list."""
        reference_to = list(data.get("referenceTo") or [])
        return cls(
            object_name=object_name,
            name=data["name"],
            type=data.get("type", "string"),
            label=data.get("label", ""),
            creatable=bool(data.get("createable", False)),
            updateable=bool(data.get("updateable", False)),
            calculated=bool(data.get("calculated", False)),
            auto_number=bool(data.get("autoNumber", False)),
            lookup=data.get("type") == "reference" and bool(reference_to),
            reference_to=reference_to,
            relationship=data.get("relationshipName"),
            length=int(data.get("length") or 0),
            custom=bool(data.get("custom", False)),
            name_field=bool(data.get("nameField", False)),
            external_id=bool(data.get("externalId", False)),
            unique=bool(data.get("unique", False)),
            master_detail=data.get("relationshipOrder") is not None or (
                bool(data.get("cascadeDelete")) and not data.get("nillable", True)),
        )

    @property
    def readonly(self) -> bool:
        return not (self.creatable and not self.calculated and not self.auto_number)

    @property
    def is_relationship(self) -> bool:
        return "." in self.name

    @property
    def is_complex(self) -> bool:
        return COMPLEX_FIELDS_SEPARATOR in self.name

    @property
    def is_simple(self) -> bool:
        return not self.is_relationship and not self.is_complex

    @property
    def is_simple_reference(self) -> bool:
        return self.lookup and self.is_simple

    @property
    def referenced_object_type(self) -> Optional[str]:
        return self.reference_to[0] if self.reference_to else None

    @property
    def is_self_reference(self) -> bool:
        return self.lookup and self.object_name in self.reference_to

    @property
    def is_polymorphic(self) -> bool:
        return self.lookup and len(self.reference_to) > 1

    @property
    def relationship_name(self) -> Optional[str]:
        return self.relationship or relationship_name_for(self.name)


@dataclass
class SObjectDescribe:
    """Metadata of one object."""
    name: str
    label: str = ""
    creatable: bool = True
    updateable: bool = True
    custom: bool = False
    fields: Dict[str, SFieldDescribe] = field(default_factory=dict)
    is_described: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SObjectDescribe":
        name = data["name"]
        return cls(
            name=name,
            label=data.get("label", ""),
            creatable=bool(data.get("createable", True)),
            updateable=bool(data.get("updateable", True)),
            custom=bool(data.get("custom", False)),
            fields={f["name"]: SFieldDescribe.from_dict(name, f) for f in data.get("fields", [])},
        )

    def get_field(self, name: str) -> Optional[SFieldDescribe]:
        found = self.fields.get(name)
        if found is not None:
            return found
        lowered = name.lower()
        for key, value in self.fields.items():
            if key.lower() == lowered:
                return value
        return None

    def has_field(self, name: str) -> bool:
        return self.get_field(name) is not None


@dataclass
class LookupField:
    """A lookup of a script object resolved against the live object set."""
    field_name: str
    relationship_name: str
    parent_names: List[str]
    external_id_paths: Dict[str, List[str]] = field(default_factory=dict)
    polymorphic: bool = False
    master_detail: bool = False

    def query_paths(self) -> List[str]:
        """Relationship paths to add to the query for non-polymorphic lookups."""
        paths: List[str] = []
        for parent_paths in self.external_id_paths.values():
            for path in parent_paths:
                if path not in paths:
                    paths.append(path)
        return paths

"""Per-task, per-side record store used for matching and lookup resolution."""

from typing import Any, Dict, Iterable, List, Optional, Set

from ..constants import COMPLEX_FIELDS_SEPARATOR, ID_FIELD_NAME
from ..models.record import Record


def normalize_key_value(value: Any, case_insensitive: bool = False) -> Optional[str]:
    """String form of one external-id part; empty values yield None."""
    if value is None:
        return None
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, float) and value.is_integer():
        text = str(int(value))
    else:
        text = str(value).strip()
    if not text:
        return None
    return text.lower() if case_insensitive else text


class TaskData:
    """
    Records of one side (source or target) of one task.

    Holds the fetched records, an Id to record map and an external-id
    value to Id map. Composite external ids are joined with ``;`` and
    only count as present when every part has a value.
    """

    def __init__(self, object_name: str, external_id_parts: List[str], is_source: bool,
                 case_insensitive: bool = False):
        self.object_name = object_name
        self.external_id_parts = external_id_parts
        self.is_source = is_source
        self.case_insensitive = case_insensitive
        self.records: List[Record] = []
        self.id_records_map: Dict[str, Record] = {}
        self.ext_id_to_record_id_map: Dict[str, str] = {}

    def compose_external_id(self, values: Iterable[Any]) -> Optional[str]:
        parts = []
        for value in values:
            normalized = normalize_key_value(value, self.case_insensitive)
            if normalized is None:
                return None
            parts.append(normalized)
        return COMPLEX_FIELDS_SEPARATOR.join(parts) if parts else None

    def get_external_id_value(self, record: Record) -> Optional[str]:
        if self.external_id_parts == [ID_FIELD_NAME]:
            return record.id
        return self.compose_external_id(record.get_value(part) for part in self.external_id_parts)

    def register_record(self, record: Record, external_id_value: Optional[str] = None) -> None:
        """Add a record; ``external_id_value`` overrides the computed value."""
        if record.id and record.id in self.id_records_map:
            self.id_records_map[record.id].update(record)
            record = self.id_records_map[record.id]
        else:
            self.records.append(record)
            if record.id:
                self.id_records_map[record.id] = record
        value = external_id_value or self.get_external_id_value(record)
        if value and record.id:
            self.ext_id_to_record_id_map.setdefault(value, record.id)

    def register_records(self, records: Iterable[Record]) -> None:
        for record in records:
            self.register_record(record)

    def keep_only(self, ids: Set[str]) -> None:
        self.records = [r for r in self.records if r.id in ids]
        self.id_records_map = {i: r for i, r in self.id_records_map.items() if i in ids}
        self.ext_id_to_record_id_map = {v: i for v, i in self.ext_id_to_record_id_map.items() if i in ids}

    def get_record_by_external_id(self, value: Optional[str]) -> Optional[Record]:
        if not value:
            return None
        record_id = self.ext_id_to_record_id_map.get(value)
        return self.id_records_map.get(record_id) if record_id else None

    def __len__(self) -> int:
        return len(self.records)

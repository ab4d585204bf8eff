"""Value mapping and loose value comparison between source and target records."""

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dateutil import parser as date_parser

from ..constants import ID_FIELD_NAME, INTERNAL_ID_FIELD_NAME, INTERNAL_SOURCE_ID_FIELD_NAME, NOT_AVAILABLE_VALUE
from ..models.script import ValueMappingItem

logger = logging.getLogger(__name__)

COMPARISON_IGNORED_FIELDS = (ID_FIELD_NAME, INTERNAL_ID_FIELD_NAME, INTERNAL_SOURCE_ID_FIELD_NAME)

_DATE_LIKE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class ValuesMapper:
    """Applies ``ObjectName/FieldName/RawValue/Value`` rules to outgoing records."""

    def __init__(self, items: Optional[Iterable[ValueMappingItem]] = None):
        self._exact: Dict[Tuple[str, str], Dict[str, Optional[str]]] = {}
        self._regex: Dict[Tuple[str, str], List[Tuple[re.Pattern, str]]] = {}
        for item in items or []:
            self.add(item)

    def add(self, item: ValueMappingItem) -> None:
        key = (item.object_name, item.field_name)
        raw = item.raw_value
        if len(raw) > 2 and raw.startswith("/") and raw.endswith("/"):
            self._regex.setdefault(key, []).append((re.compile(raw[1:-1]), str(item.value or "")))
        else:
            self._exact.setdefault(key, {})[raw] = item.value

    def __len__(self) -> int:
        return sum(len(v) for v in self._exact.values()) + sum(len(v) for v in self._regex.values())

    def fields_for(self, object_name: str) -> List[str]:
        names = {f for (o, f) in list(self._exact) + list(self._regex) if o == object_name}
        return sorted(names)

    def map_value(self, object_name: str, field_name: str, value: Any) -> Any:
        """
        Map one value.

        Regex rules rewrite the raw text first; the result (or the raw
        value) is then looked up in the exact rules. ``#N/A`` maps to None.
        """
        key = (object_name, field_name)
        raw = "" if value is None else str(value).strip()
        candidate: Optional[str] = None
        for pattern, replacement in self._regex.get(key, []):
            if pattern.search(raw):
                candidate = pattern.sub(replacement, raw)
                break

        exact = self._exact.get(key, {})
        if candidate is not None and candidate in exact:
            mapped: Any = exact[candidate]
        elif candidate is not None:
            mapped = candidate
        elif raw in exact:
            mapped = exact[raw]
        else:
            return value
        if mapped == NOT_AVAILABLE_VALUE:
            return None
        return mapped

    def apply(self, object_name: str, records: List[Dict[str, Any]]) -> int:
        """Map values in place. Returns the number of values changed."""
        changed = 0
        for field_name in self.fields_for(object_name):
            for record in records:
                if field_name not in record:
                    continue
                new_value = self.map_value(object_name, field_name, record[field_name])
                if new_value != record[field_name]:
                    record[field_name] = new_value
                    changed += 1
        if changed:
            logger.debug(f"{object_name}: {changed} value(s) mapped")
        return changed


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and _DATE_LIKE_RE.match(value.strip()):
        try:
            return date_parser.isoparse(value.strip())
        except ValueError:
            return None
    return None


def _normalize(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        lowered = text.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        if _NUMBER_RE.match(text):
            return float(text)
        return text
    return value


def values_equal(left: Any, right: Any) -> bool:
    """
    Loose equality of two field values.

    Empty string and None are equal, numbers compare numerically whatever
    their representation, ``"true"`` equals True, and date/time strings
    compare as instants.
    """
    left_dt, right_dt = _as_datetime(left), _as_datetime(right)
    if left_dt is not None and right_dt is not None:
        if (left_dt.tzinfo is None) != (right_dt.tzinfo is None):
            left_dt, right_dt = left_dt.replace(tzinfo=None), right_dt.replace(tzinfo=None)
        return left_dt == right_dt
    return _normalize(left) == _normalize(right)


def records_differ(source: Dict[str, Any], target: Dict[str, Any], fields: Iterable[str]) -> bool:
    """True if any compared field (other than the id fields) differs."""
    for name in fields:
        if name in COMPARISON_IGNORED_FIELDS:
            continue
        if not values_equal(source.get(name), target.get(name)):
            return True
    return False


def compare_values(left: Any, right: Any) -> Optional[int]:
    """
    Order two values the way ``values_equal`` compares them.

    Returns -1, 0 or 1, or None when either side is empty.
    """
    if values_equal(left, right):
        return 0
    left_dt, right_dt = _as_datetime(left), _as_datetime(right)
    if left_dt is not None and right_dt is not None:
        if (left_dt.tzinfo is None) != (right_dt.tzinfo is None):
            left_dt, right_dt = left_dt.replace(tzinfo=None), right_dt.replace(tzinfo=None)
        return -1 if left_dt < right_dt else 1
    left_value, right_value = _normalize(left), _normalize(right)
    if left_value is None or right_value is None:
        return None
    if type(left_value) is not type(right_value):
        left_value, right_value = str(left_value), str(right_value)
    if isinstance(left_value, str):
        left_value, right_value = left_value.lower(), right_value.lower()
        if left_value == right_value:
            return 0
    return -1 if left_value < right_value else 1

"""Minimal SOQL parsing and composition.

Only the shape the migration needs is understood: a field list (including
``TYPEOF ... END`` blocks and ``Field$Type`` polymorphic markers), the
``FROM`` object and the trailing WHERE / ORDER BY / LIMIT / OFFSET clauses.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .constants import POLYMORPHIC_FIELD_SEPARATOR
from .exceptions import ConfigurationError

_QUERY_RE = re.compile(r"^\s*SELECT\s+(?P<fields>.+?)\s+FROM\s+(?P<object>\w+)(?P<tail>.*)$",
                       re.IGNORECASE | re.DOTALL)
_CLAUSE_RE = re.compile(r"\b(WHERE|ORDER\s+BY|LIMIT|OFFSET)\b", re.IGNORECASE)
_TYPEOF_END_RE = re.compile(r"\bEND\s*$", re.IGNORECASE)
_FIELD_RE = re.compile(r"^[\w.$]+$")

ALL_FIELDS_KEYWORD = "all"
UPDATEABLE_FIELDS_KEYWORD = "readonly_false"
READONLY_FIELDS_KEYWORD = "readonly_true"
FIELD_KEYWORDS = (ALL_FIELDS_KEYWORD, UPDATEABLE_FIELDS_KEYWORD, READONLY_FIELDS_KEYWORD)


@dataclass
class SoqlQuery:
    """Parsed SELECT statement."""
    object_name: str
    fields: List[str] = field(default_factory=list)
    where: str = ""
    order_by: str = ""
    limit: Optional[int] = None
    offset: Optional[int] = None
    polymorphic_types: Dict[str, str] = field(default_factory=dict)
    keywords: List[str] = field(default_factory=list)

    def copy(self, **changes) -> "SoqlQuery":
        values = {
            "object_name": self.object_name,
            "fields": list(self.fields),
            "where": self.where,
            "order_by": self.order_by,
            "limit": self.limit,
            "offset": self.offset,
            "polymorphic_types": dict(self.polymorphic_types),
            "keywords": list(self.keywords),
        }
        values.update(changes)
        return SoqlQuery(**values)

    def add_field(self, name: str) -> None:
        if not any(f.lower() == name.lower() for f in self.fields):
            self.fields.append(name)

    def to_soql(self) -> str:
        """Compose the statement back into a query string."""
        parts = [f"SELECT {', '.join(self.fields)} FROM {self.object_name}"]
        if self.where:
            parts.append(f"WHERE {self.where}")
        if self.order_by:
            parts.append(f"ORDER BY {self.order_by}")
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        if self.offset is not None:
            parts.append(f"OFFSET {self.offset}")
        return " ".join(parts)


def split_field_list(text: str) -> List[str]:
    """Split a comma separated field list, keeping TYPEOF blocks whole."""
    tokens: List[str] = []
    current: Optional[str] = None
    for piece in text.split(","):
        piece = piece.strip()
        if current is not None:
            current = f"{current}, {piece}"
            if _TYPEOF_END_RE.search(current):
                tokens.append(current)
                current = None
            continue
        if piece.upper().startswith("TYPEOF ") and not _TYPEOF_END_RE.search(piece):
            current = piece
            continue
        if piece:
            tokens.append(piece)
    if current is not None:
        raise ConfigurationError(f"Unterminated TYPEOF clause: {current}")
    return tokens


def _split_tail(tail: str) -> Dict[str, str]:
    clauses: Dict[str, str] = {}
    matches = list(_CLAUSE_RE.finditer(tail))
    if tail.strip() and (not matches or tail[:matches[0].start()].strip()):
        raise ConfigurationError(f"Unexpected text in query: {tail.strip()}")
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(tail)
        keyword = re.sub(r"\s+", " ", match.group(1).upper())
        clauses[keyword] = tail[match.end():end].strip()
    return clauses


def _parse_int(value: Optional[str], clause: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid {clause} value: {value}")


def parse_query(query: str) -> SoqlQuery:
    """
    Parse a SELECT statement.

    Args:
        query: SOQL text

    Returns:
        SoqlQuery with polymorphic markers moved into ``polymorphic_types``

    Raises:
        ConfigurationError: if the statement is not a well-formed SELECT
    """
    if not query or not query.strip():
        raise ConfigurationError("Query is empty")
    match = _QUERY_RE.match(query)
    if not match:
        raise ConfigurationError(f"Malformed query: {query}")

    parsed = SoqlQuery(object_name=match.group("object"))
    for token in split_field_list(match.group("fields")):
        if token.lower() in FIELD_KEYWORDS:
            parsed.keywords.append(token.lower())
            continue
        if not token.upper().startswith("TYPEOF ") and not _FIELD_RE.match(token):
            raise ConfigurationError(f"Malformed field '{token}' in query: {query}")
        if POLYMORPHIC_FIELD_SEPARATOR in token and not token.upper().startswith("TYPEOF "):
            name, _, type_name = token.partition(POLYMORPHIC_FIELD_SEPARATOR)
            if not name or not type_name:
                raise ConfigurationError(f"Malformed polymorphic field '{token}' in query: {query}")
            parsed.polymorphic_types[name] = type_name
            token = name
        parsed.add_field(token)

    if not parsed.fields and not parsed.keywords:
        raise ConfigurationError(f"Query has no fields: {query}")

    clauses = _split_tail(match.group("tail"))
    parsed.where = clauses.get("WHERE", "")
    parsed.order_by = clauses.get("ORDER BY", "")
    parsed.limit = _parse_int(clauses.get("LIMIT"), "LIMIT")
    parsed.offset = _parse_int(clauses.get("OFFSET"), "OFFSET")
    return parsed


def typeof_clause(relationship_name: str, fields_by_type: Dict[str, Iterable[str]]) -> str:
    """Compose ``TYPEOF Rel WHEN T THEN f1, f2 ... END``."""
    whens = " ".join(f"WHEN {type_name} THEN {', '.join(fields)}"
                     for type_name, fields in fields_by_type.items())
    return f"TYPEOF {relationship_name} {whens} END"


def typeof_paths(token: str) -> List[str]:
    """Expand a TYPEOF block into the dotted paths it selects, without duplicates."""
    match = re.match(r"^\s*TYPEOF\s+(\w+)\s+(.*?)\s*END\s*$", token, re.IGNORECASE | re.DOTALL)
    if not match:
        return []
    relationship, body = match.group(1), match.group(2)
    paths: List[str] = []
    for part in re.split(r"\b(?:WHEN\s+\w+\s+THEN|ELSE)\b", body, flags=re.IGNORECASE):
        for name in part.split(","):
            name = name.strip()
            if name and f"{relationship}.{name}" not in paths:
                paths.append(f"{relationship}.{name}")
    return paths

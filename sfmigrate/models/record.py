"""Record models for migration data."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..constants import ERRORS_FIELD_NAME, ID_FIELD_NAME


class Record(dict):
    """
    Schema-light ordered field bag.

    Field sets are defined by the script at runtime, so a record is a dict
    of field name to scalar value. Relationship values are stored flattened
    under dotted keys (``Account.Name``).
    """

    @property
    def id(self) -> Optional[str]:
        value = self.get(ID_FIELD_NAME)
        return str(value) if value not in (None, "") else None

    @id.setter
    def id(self, value: Optional[str]) -> None:
        self[ID_FIELD_NAME] = value

    @property
    def errors(self) -> Optional[str]:
        return self.get(ERRORS_FIELD_NAME)

    @errors.setter
    def errors(self, value: Optional[str]) -> None:
        self[ERRORS_FIELD_NAME] = value

    @property
    def has_errors(self) -> bool:
        return bool(self.get(ERRORS_FIELD_NAME))

    def get_value(self, path: str, default: Any = None) -> Any:
        """Get a field value by name or dotted relationship path."""
        if path in self:
            return self[path]
        lowered = path.lower()
        for key, value in self.items():
            if key.lower() == lowered:
                return value
        return default

    def get_str(self, path: str) -> Optional[str]:
        value = self.get_value(path)
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def clone(self, fields: Optional[List[str]] = None) -> "Record":
        """Shallow copy, optionally restricted to the given fields."""
        if fields is None:
            return Record(self)
        return Record((f, self.get_value(f)) for f in fields)

    def without(self, *fields: str) -> "Record":
        return Record((k, v) for k, v in self.items() if k not in fields)


@dataclass
class CrudResult:
    """Outcome of one submitted record as reported by the transport."""
    id: Optional[str] = None
    success: Optional[bool] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrudResult":
        errors = []
        for error in data.get("errors") or []:
            if isinstance(error, dict):
                fields = error.get("fields") or []
                message = error.get("message") or error.get("statusCode") or "Unknown error"
                if fields:
                    message = f"{message} ({', '.join(fields)})"
                errors.append(str(message))
            else:
                errors.append(str(error))
        return cls(id=data.get("id"), success=data.get("success"), errors=errors)

    @property
    def is_success(self) -> bool:
        if self.success is None:
            return not self.errors
        return bool(self.success) and not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "success": self.success, "errors": self.errors}

"""Exception hierarchy for migration runs.

Configuration and unresolvable-reference errors abort the affected object
set. Execution errors abort only the task that raised them. Per-record DML
failures never raise; they are carried on the record's ``Errors`` field.
"""

from typing import Optional


class MigrationError(Exception):
    """Base class for all migration errors."""

    def __init__(self, message: str, object_name: Optional[str] = None):
        self.message = message
        self.object_name = object_name
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.object_name:
            return f"[{self.object_name}] {self.message}"
        return self.message


class ConfigurationError(MigrationError):
    """Malformed query, unresolvable external id or invalid operation."""


class UnresolvableReferenceError(MigrationError):
    """A lookup could not be resolved to any parent record."""

    def __init__(self, message: str, object_name: Optional[str] = None, field_name: Optional[str] = None):
        self.field_name = field_name
        super().__init__(message, object_name)


class ExecutionError(MigrationError):
    """Transport failure, permission denial or a failed/timed-out bulk job."""

    def __init__(self, message: str, object_name: Optional[str] = None, error_code: Optional[str] = None):
        self.error_code = error_code
        super().__init__(message, object_name)


class JobAbortedError(MigrationError):
    """Raised at a task boundary after cancellation was requested."""

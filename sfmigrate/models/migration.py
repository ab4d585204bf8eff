"""Migration execution models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


class MigrationStatus(str, Enum):
    """Status of a run or an object set."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskState(str, Enum):
    """Lifecycle of a migration task."""
    CREATED = "created"
    FIRST_UPDATE = "first_update"
    SECOND_UPDATE = "second_update"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class UpdateMode(str, Enum):
    """Pass of the two-pass update."""
    FIRST_UPDATE = "FIRST_UPDATE"
    SECOND_UPDATE = "SECOND_UPDATE"


@dataclass
class MissingParentRecord:
    """A lookup value that could not be resolved to a target record."""
    object_name: str
    field_name: str
    source_record_id: Optional[str]
    lookup_value: Optional[str]
    update_mode: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_name": self.object_name,
            "field_name": self.field_name,
            "source_record_id": self.source_record_id,
            "lookup_value": self.lookup_value,
            "update_mode": self.update_mode,
        }


@dataclass
class TaskSummary:
    """Counters of one task."""
    object_name: str
    operation: str
    state: TaskState = TaskState.CREATED
    source_records: int = 0
    target_records: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    skipped_unchanged: int = 0
    engines: List[str] = field(default_factory=list)
    missing_parents: List[MissingParentRecord] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.deleted

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_name": self.object_name,
            "operation": self.operation,
            "state": self.state.value,
            "source_records": self.source_records,
            "target_records": self.target_records,
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "failed": self.failed,
            "processed": self.processed,
            "skipped_unchanged": self.skipped_unchanged,
            "engines": self.engines,
            "missing_parents": [m.to_dict() for m in self.missing_parents],
            "errors": self.errors,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ObjectSetSummary:
    """Per object set report: counts and the order objects were processed in."""
    index: int
    status: MigrationStatus = MigrationStatus.PENDING
    query_order: List[str] = field(default_factory=list)
    delete_order: List[str] = field(default_factory=list)
    update_order: List[str] = field(default_factory=list)
    tasks: List[TaskSummary] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return sum(t.processed for t in self.tasks)

    @property
    def total_failed(self) -> int:
        return sum(t.failed for t in self.tasks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status.value,
            "query_order": self.query_order,
            "delete_order": self.delete_order,
            "update_order": self.update_order,
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "tasks": [t.to_dict() for t in self.tasks],
            "errors": self.errors,
        }


@dataclass
class MigrationRun:
    """A single execution of a script."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MigrationStatus = MigrationStatus.PENDING
    script_path: Optional[str] = None
    simulation_mode: bool = False
    object_sets: List[ObjectSetSummary] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_processed(self) -> int:
        return sum(s.total_processed for s in self.object_sets)

    @property
    def total_failed(self) -> int:
        return sum(s.total_failed for s in self.object_sets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "script_path": self.script_path,
            "simulation_mode": self.simulation_mode,
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "object_sets": [s.to_dict() for s in self.object_sets],
            "errors": self.errors,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

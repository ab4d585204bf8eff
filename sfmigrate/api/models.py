"""Options and results of the API execution layer."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..constants import (
    DEFAULT_BULK_API_THRESHOLD_RECORDS,
    DEFAULT_BULK_API_VERSION,
    DEFAULT_POLLING_INTERVAL_MS,
    DEFAULT_POLLING_TIMEOUT_MS,
)
from ..models.record import Record
from ..models.script import Operation


class EngineType(str, Enum):
    """Transport strategy used to apply a batch of records."""
    REST = "REST API"
    BULK_V1 = "Bulk API V1.0"
    BULK_V2 = "Bulk API V2.0"


@dataclass
class ApiEngineSelectionOptions:
    """Inputs of the engine selection policy."""
    amount_to_process: int
    bulk_threshold: int = DEFAULT_BULK_API_THRESHOLD_RECORDS
    always_use_rest: bool = False
    force_bulk: bool = False
    bulk_api_version: str = DEFAULT_BULK_API_VERSION
    object_name: str = ""


@dataclass
class ApiEngineRunOptions:
    """Everything an engine needs to apply one operation to a record list."""
    connection: Any
    object_name: str
    operation: Operation
    records: List[Record] = field(default_factory=list)
    update_record_id: bool = False
    simulation_mode: bool = False
    all_or_none: bool = False
    rest_api_batch_size: Optional[int] = None
    bulk_api_v1_batch_size: Optional[int] = None
    parallel_rest_jobs: int = 1
    parallel_bulk_jobs: int = 1
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    polling_timeout_ms: int = DEFAULT_POLLING_TIMEOUT_MS
    concurrency_mode: str = "Parallel"


@dataclass
class CrudReport:
    """Outcome of one execute_crud call."""
    engine: EngineType
    object_name: str
    operation: Operation
    records: List[Record] = field(default_factory=list)
    processed: int = 0
    failed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine": self.engine.value,
            "object_name": self.object_name,
            "operation": self.operation.value,
            "processed": self.processed,
            "failed": self.failed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

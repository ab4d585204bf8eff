"""Job orchestration: task ordering, record matching and the update passes."""

from .job import MigrationJob
from .task import MigrationJobTask
from .task_data import TaskData, normalize_key_value

__all__ = [
    "MigrationJob",
    "MigrationJobTask",
    "TaskData",
    "normalize_key_value",
]

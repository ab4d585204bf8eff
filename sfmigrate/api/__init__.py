"""API execution layer: engine selection and the REST/Bulk engines."""

from .base import ApiEngine
from .bulk_v1 import BulkApiV1Engine
from .bulk_v2 import BulkApiV2Engine
from .executor import ApiEngineExecutor
from .factory import ApiEngineFactory
from .models import ApiEngineRunOptions, ApiEngineSelectionOptions, CrudReport, EngineType
from .rest import RestApiEngine

__all__ = [
    "ApiEngine",
    "ApiEngineExecutor",
    "ApiEngineFactory",
    "ApiEngineRunOptions",
    "ApiEngineSelectionOptions",
    "BulkApiV1Engine",
    "BulkApiV2Engine",
    "CrudReport",
    "EngineType",
    "RestApiEngine",
]

"""Engine selection policy and engine construction."""

import logging
from typing import TYPE_CHECKING

from ..constants import DEFAULT_BULK_API_VERSION, NOT_SUPPORTED_OBJECTS_IN_BULK_API
from .base import ApiEngine
from .bulk_v1 import BulkApiV1Engine
from .bulk_v2 import BulkApiV2Engine
from .models import ApiEngineSelectionOptions, EngineType
from .rest import RestApiEngine

if TYPE_CHECKING:
    from ..context import RunContext

logger = logging.getLogger(__name__)

ENGINES = {
    EngineType.REST: RestApiEngine,
    EngineType.BULK_V1: BulkApiV1Engine,
    EngineType.BULK_V2: BulkApiV2Engine,
}


def _bulk_version(value: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(DEFAULT_BULK_API_VERSION)


class ApiEngineFactory:
    """Chooses and builds the engine for one execute_crud call."""

    @staticmethod
    def resolve_engine_type(options: ApiEngineSelectionOptions) -> EngineType:
        """
        Pure selection policy.

        1. Objects the bulk API does not support always use REST.
        2. ``force_bulk`` picks Bulk v2 for version >= 2, else Bulk v1.
        3. More records than ``bulk_threshold`` (and REST not forced) picks
           bulk by the same version rule.
        4. Otherwise REST.
        """
        if options.object_name in NOT_SUPPORTED_OBJECTS_IN_BULK_API:
            return EngineType.REST
        bulk = EngineType.BULK_V2 if _bulk_version(options.bulk_api_version) >= 2 else EngineType.BULK_V1
        if options.force_bulk:
            return bulk
        if options.amount_to_process > options.bulk_threshold and not options.always_use_rest:
            return bulk
        return EngineType.REST

    @classmethod
    def create_engine(cls, options: ApiEngineSelectionOptions, context: "RunContext") -> ApiEngine:
        engine_type = cls.resolve_engine_type(options)
        context.logger.debug("apiEngineSelected", options.object_name, engine_type.value, options.amount_to_process)
        return ENGINES[engine_type](context)

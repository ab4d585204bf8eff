"""Runs one CRUD operation through a selected engine and reports counts."""

import logging
from datetime import datetime

from .base import ApiEngine
from .models import ApiEngineRunOptions, CrudReport

logger = logging.getLogger(__name__)


class ApiEngineExecutor:
    """Binds an engine to its run options."""

    def __init__(self, engine: ApiEngine, options: ApiEngineRunOptions):
        self.engine = engine
        self.options = options

    async def execute_crud(self) -> CrudReport:
        """
        Execute the operation.

        Returns:
            CrudReport with the processed records (Errors and Ids stamped)
            and processed/failed counts
        """
        report = CrudReport(
            engine=self.engine.engine_type,
            object_name=self.options.object_name,
            operation=self.options.operation,
            started_at=datetime.utcnow(),
        )
        if not self.options.records:
            report.completed_at = report.started_at
            return report
        report.records = await self.engine.execute_crud(self.options)
        report.processed = len(report.records)
        report.failed = sum(1 for r in report.records if r.has_errors)
        report.completed_at = datetime.utcnow()
        logger.debug(f"{report.object_name}: {report.operation.value} via {report.engine.value}, "
                     f"{report.processed} processed, {report.failed} failed")
        return report

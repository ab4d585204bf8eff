"""Migration runner - coordinates one execution of a script."""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .connections.base import BaseConnection
from .connections.registry import ConnectionRegistry
from .context import RunContext
from .exceptions import MigrationError, UnresolvableReferenceError
from .job.job import MigrationJob
from .models.migration import MigrationRun, MigrationStatus, ObjectSetSummary
from .models.script import Script, ScriptObjectSet
from .services.cache import RecordCache
from .services.field_resolver import FieldResolver
from .services.mapping import MappingResolver
from .services.values import ValuesMapper

logger = logging.getLogger(__name__)


class MigrationRunner:
    """
    Runs a migration script end to end.

    Handles:
    - Script validation and normalization
    - Connection setup for the source and target orgs
    - Field, external id and lookup resolution per object set
    - Job execution per object set
    - Report writing
    """

    def __init__(
        self,
        script: Script,
        context: Optional[RunContext] = None,
        registry: Optional[ConnectionRegistry] = None,
        script_path: Optional[str] = None,
        output_dir: Optional[str] = None,
    ):
        """
        Initialize the runner.

        Args:
            script: Loaded migration script
            context: Run context (logger, hooks, settings); a default one is created
            registry: Connection registry; a default one is created from settings
            script_path: Path the script was loaded from, for the report
            output_dir: Report directory root (defaults to settings.output_dir)
        """
        self.script = script
        self.context = context or RunContext()
        self.settings = self.context.settings
        self.registry = registry or ConnectionRegistry(self.settings)
        self.script_path = script_path
        self.output_dir = output_dir or self.settings.output_dir

        self.run: Optional[MigrationRun] = None
        self.jobs: List[MigrationJob] = []

        self._setup_directories()

    def _setup_directories(self):
        """Create output directories."""
        base = Path(self.output_dir)
        self.logs_dir = base / "logs"
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def run_migration(self) -> MigrationRun:
        """Run the migration on a fresh event loop."""
        return asyncio.run(self.run_async())

    async def run_async(self) -> MigrationRun:
        """
        Run every object set of the script.

        Returns:
            MigrationRun with per-set summaries, errors and warnings
        """
        self.run = MigrationRun(script_path=self.script_path, simulation_mode=self.script.simulation_mode)
        self.run.started_at = datetime.utcnow()
        self.run.status = MigrationStatus.RUNNING

        try:
            logger.info("=== SETUP ===")
            self.run.warnings.extend(self.script.setup(self.settings))
            self.context.logger.log("scriptLoaded", len(self.script.object_sets), len(self.script.get_all_objects()))

            source, target = self._open_connections()
            values_mapper = ValuesMapper(self.script.values_mapping)
            cache = RecordCache(
                self.script.cache_directory or self.settings.cache_dir,
                enabled=self.script.source_records_cache,
            )

            for object_set in self.script.object_sets:
                summary = await self._run_object_set(object_set, source, target, values_mapper, cache)
                self.run.object_sets.append(summary)
                if summary.status == MigrationStatus.CANCELLED:
                    break

            self.run.status = self._final_status()
            logger.info(f"=== MIGRATION {self.run.status.value.upper()} ===")

        except MigrationError as e:
            logger.error(f"Migration failed: {e}")
            self.run.status = MigrationStatus.FAILED
            self.run.errors.append({
                "error": str(e),
                "type": type(e).__name__,
                "timestamp": datetime.utcnow().isoformat(),
            })

        finally:
            self.run.completed_at = datetime.utcnow()
            await self.registry.close_all()
            self._save_report()

        return self.run

    def _open_connections(self):
        source_org = self.script.get_org(self.script.source_org)
        target_org = self.script.get_org(self.script.target_org)
        source: BaseConnection = self.registry.get(source_org, self.script.api_version)
        target: BaseConnection = self.registry.get(target_org, self.script.api_version)
        return source, target

    async def _run_object_set(
        self,
        object_set: ScriptObjectSet,
        source: BaseConnection,
        target: BaseConnection,
        values_mapper: ValuesMapper,
        cache: RecordCache,
    ) -> ObjectSetSummary:
        """Resolve and run one object set; an unresolvable lookup fails only this set."""
        mapping = MappingResolver()
        mapping.add_script_objects(object_set.active_objects)
        resolver = FieldResolver(mapping, source, target)
        await resolver.resolve_object_set(object_set)

        job = MigrationJob(
            script=self.script,
            object_set=object_set,
            context=self.context,
            source_connection=source,
            target_connection=target,
            mapping=mapping,
            values_mapper=values_mapper,
            cache=cache,
        )
        self.jobs.append(job)
        job.build_tasks()
        try:
            return await job.run()
        except UnresolvableReferenceError as e:
            logger.error(f"Object set {object_set.index} aborted: {e}")
            return job.summary

    def _final_status(self) -> MigrationStatus:
        statuses = [s.status for s in self.run.object_sets]
        if MigrationStatus.CANCELLED in statuses:
            return MigrationStatus.CANCELLED
        if MigrationStatus.FAILED in statuses or MigrationStatus.COMPLETED_WITH_ERRORS in statuses:
            return MigrationStatus.COMPLETED_WITH_ERRORS
        return MigrationStatus.COMPLETED

    def _save_report(self):
        """Save the migration report."""
        filepath = self.logs_dir / f"migration_report_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.json"
        with open(filepath, 'w') as f:
            json.dump(self.run.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved migration report to {filepath}")


def validate_script(script: Script) -> List[str]:
    """
    Run the offline checks of a script without opening connections.

    Returns:
        Validation warnings

    Raises:
        ConfigurationError: on the first structural problem
    """
    warnings = script.setup()
    script.get_org(script.source_org)
    script.get_org(script.target_org)
    return warnings

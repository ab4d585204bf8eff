"""Migration job: orders the tasks of one object set and drives their stages."""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..connections.base import BaseConnection
from ..constants import DEFAULT_MAX_PARALLEL_EXEC_TASKS, RECORD_TYPE_SOBJECT_NAME
from ..context import RunContext
from ..exceptions import ConfigurationError, ExecutionError, JobAbortedError, UnresolvableReferenceError
from ..models.migration import MigrationStatus, ObjectSetSummary, TaskState, UpdateMode
from ..models.script import Script, ScriptObject, ScriptObjectSet
from ..services.cache import RecordCache
from ..services.mapping import MappingResolver
from ..services.values import ValuesMapper
from .task import MigrationJobTask

logger = logging.getLogger(__name__)


class MigrationJob:
    """
    Executes one object set.

    Stages run in this order over the ordered task list:

    1. Delete: Delete operations and ``deleteOldData``, in reverse order
       so children go before their parents.
    2. Query: source and target records of every non-delete task.
       Objects that are not master keep only the source records related
       to the records kept for the other objects.
    3. First update: inserts and updates without deferred lookups.
    4. Second update: deferred lookups of the tasks that have any.
    """

    def __init__(
        self,
        script: Script,
        object_set: ScriptObjectSet,
        context: RunContext,
        source_connection: BaseConnection,
        target_connection: BaseConnection,
        mapping: MappingResolver,
        values_mapper: Optional[ValuesMapper] = None,
        cache: Optional[RecordCache] = None,
    ):
        self.script = script
        self.object_set = object_set
        self.context = context
        self.source_connection = source_connection
        self.target_connection = target_connection
        self.mapping = mapping
        self.values_mapper = values_mapper
        self.cache = cache
        self.tasks: List[MigrationJobTask] = []
        self.summary = ObjectSetSummary(index=object_set.index)

    # ---- Planning ----

    @staticmethod
    def order_objects(objects: List[ScriptObject], keep_declared_order: bool = False) -> List[ScriptObject]:
        """
        Best-effort dependency order of the objects.

        RecordType goes first, then readonly objects in declared order.
        Every other object is placed before the first already placed object
        that looks it up, or appended. Master-detail parents are then moved
        ahead of their children. Cycles are left to the second update pass.

        Args:
            objects: Active objects of the set in declared order
            keep_declared_order: Only move RecordType to the front

        Returns:
            The ordered objects
        """
        record_types = [o for o in objects if o.name == RECORD_TYPE_SOBJECT_NAME]
        others = [o for o in objects if o.name != RECORD_TYPE_SOBJECT_NAME]
        if keep_declared_order:
            return record_types + others

        ordered: List[ScriptObject] = list(record_types)
        readonly_end = len(ordered)
        for obj in others:
            if obj.is_readonly:
                ordered.insert(readonly_end, obj)
                readonly_end += 1
                continue
            position = next(
                (i for i in range(readonly_end, len(ordered)) if obj.name in ordered[i].parent_lookup_objects),
                None,
            )
            if position is None:
                ordered.append(obj)
            else:
                ordered.insert(position, obj)

        for _ in range(len(ordered)):
            moved = False
            for child_index, child in enumerate(ordered):
                for parent_name in child.parent_master_detail_objects:
                    parent_index = next((i for i, o in enumerate(ordered) if o.name == parent_name), None)
                    if parent_index is not None and parent_index > child_index:
                        ordered.insert(child_index, ordered.pop(parent_index))
                        moved = True
                        break
                if moved:
                    break
            if not moved:
                break
        return ordered

    def build_tasks(self) -> List[MigrationJobTask]:
        """Create one task per active object in execution order."""
        ordered = self.order_objects(self.object_set.active_objects, self.script.keep_object_order_while_execute)
        self.tasks = []
        for obj in ordered:
            target_parts = [self.mapping.map_field_name_to_target(obj.name, p) for p in obj.external_id_parts]
            self.tasks.append(MigrationJobTask(self, obj, target_parts))

        order_index = {task.object_name: i for i, task in enumerate(self.tasks)}
        for task in self.tasks:
            task.prepare(order_index)
            if task.has_deferred_lookups:
                logger.debug(f"{task.object_name}: deferred lookups {task.deferred_lookup_fields}")
        self.summary.tasks = [task.summary for task in self.tasks]
        self.context.logger.log("executionOrder", self.object_set.index,
                                ", ".join(task.object_name for task in self.tasks))
        return self.tasks

    # ---- Lookup ----

    def get_task_by_object_name(self, object_name: str) -> Optional[MigrationJobTask]:
        for task in self.tasks:
            if task.object_name == object_name:
                return task
        return None

    def get_task_by_field_path(
        self,
        field_path: str,
        start_task: Optional[MigrationJobTask] = None,
    ) -> Tuple[Optional[MigrationJobTask], Optional[str]]:
        """
        Find the task owning the last field of a dotted path.

        Without ``start_task`` the first segment is an object name, so
        ``Contact.Account.Name`` walks Contact -> Account and returns the
        Account task with ``Name``. Relationship segments follow the
        lookups of the current task; polymorphic lookups follow their
        first parent.

        Returns:
            (task, field name), or (None, None) when the path leaves the set
        """
        segments = field_path.split(".")
        task = start_task
        if task is None:
            task = self.get_task_by_object_name(segments[0])
            segments = segments[1:]
        if task is None or not segments:
            return None, None

        for segment in segments[:-1]:
            lookup = next(
                (lk for lk in task.script_object.lookups.values()
                 if lk.relationship_name.lower() == segment.lower()),
                None,
            )
            if lookup is None:
                return None, None
            task = self.get_task_by_object_name(lookup.parent_names[0])
            if task is None:
                return None, None
        return task, segments[-1]

    def dependents_of(self, task: MigrationJobTask) -> List[MigrationJobTask]:
        return [t for t in self.tasks if task in t.parent_tasks()]

    # ---- Execution ----

    async def run(self) -> ObjectSetSummary:
        """
        Run every stage of the object set.

        Returns:
            ObjectSetSummary with per-task counters and stage orders

        Raises:
            ConfigurationError, UnresolvableReferenceError: abort the set
        """
        summary = self.summary
        summary.status = MigrationStatus.RUNNING
        self.context.logger.log("objectSetStarted", self.object_set.index)
        if not self.tasks:
            self.build_tasks()

        try:
            await self._delete_stage()
            if not await self._query_stage():
                return summary
            self._limit_non_master_records()
            await self._update_stage(UpdateMode.FIRST_UPDATE)
            await self._update_stage(UpdateMode.SECOND_UPDATE)
        except JobAbortedError as e:
            summary.status = MigrationStatus.CANCELLED
            summary.errors.append({"error": str(e), "timestamp": datetime.utcnow().isoformat()})
            return summary
        except (ConfigurationError, UnresolvableReferenceError) as e:
            summary.status = MigrationStatus.FAILED
            summary.errors.append({"error": str(e), "timestamp": datetime.utcnow().isoformat()})
            raise

        for task in self.tasks:
            if not task.is_terminated:
                task.set_state(TaskState.DONE)
                task.summary.completed_at = datetime.utcnow()

        failed_tasks = [t for t in self.tasks if t.is_terminated]
        if failed_tasks or summary.total_failed:
            summary.status = MigrationStatus.COMPLETED_WITH_ERRORS
        else:
            summary.status = MigrationStatus.COMPLETED
        logger.info(f"Object set {self.object_set.index} {summary.status.value}: "
                    f"{summary.total_processed} processed, {summary.total_failed} failed")
        return summary

    async def _run_task(self, task: MigrationJobTask, stage: str, step: Callable[[], Awaitable]) -> bool:
        """Run one stage step of a task; ExecutionError fails only that task and its dependents."""
        if task.is_terminated:
            return False
        self.context.check_cancelled()
        if task.summary.started_at is None:
            task.summary.started_at = datetime.utcnow()
        self.context.logger.debug("taskStarted", task.object_name, stage)
        try:
            await step()
        except ExecutionError as e:
            self._fail_task(task, stage, e)
            return False
        self.context.logger.debug("taskCompleted", task.object_name, stage)
        return True

    def _fail_task(self, task: MigrationJobTask, stage: str, error: Exception) -> None:
        task.fail(error)
        self.context.logger.error("taskFailed", task.object_name, stage, error)
        self.summary.errors.append({
            "object_name": task.object_name,
            "stage": stage,
            "error": str(error),
            "timestamp": datetime.utcnow().isoformat(),
        })
        pending = self.dependents_of(task)
        while pending:
            dependent = pending.pop(0)
            if dependent.is_terminated:
                continue
            dependent.set_state(TaskState.SKIPPED)
            self.context.logger.warn("taskSkippedParentFailed", dependent.object_name, task.object_name)
            pending.extend(self.dependents_of(dependent))

    async def _delete_stage(self) -> None:
        for task in reversed(self.tasks):
            if not task.needs_delete_stage:
                continue
            self.summary.delete_order.append(task.object_name)
            step = task.delete_records if task.operation.is_delete else task.delete_old_records
            await self._run_task(task, "delete", step)

    async def _query_stage(self) -> bool:
        """Retrieve records; a failed query aborts the rest of the set."""
        for task in self.tasks:
            if task.operation.is_delete:
                continue
            self.summary.query_order.append(task.object_name)
            if not await self._run_task(task, "query", task.retrieve_records) and task.state == TaskState.FAILED:
                for other in self.tasks:
                    if not other.is_terminated:
                        other.set_state(TaskState.SKIPPED)
                self.summary.status = MigrationStatus.FAILED
                return False
        return True

    def _limit_non_master_records(self) -> None:
        """
        Restrict non-master objects to the records related to the rest of the set.

        Master objects, special objects and objects without relationships
        keep every source record. A record of any other object is kept when
        a kept record of another object looks it up, or when it looks up a
        kept record. Kept sets grow until nothing changes.
        """
        queried = [t for t in self.tasks if not t.operation.is_delete and not t.is_terminated]
        limited = [t for t in queried if not t.processes_all_source_records]
        if not limited:
            return
        kept: Dict[str, Set[str]] = {
            t.object_name: set() if t in limited else {r.id for r in t.source_data.records if r.id}
            for t in queried
        }
        changed = True
        while changed:
            changed = False
            referenced = self._referenced_source_ids(queried, kept)
            for task in limited:
                ids = kept[task.object_name]
                for record in task.source_data.records:
                    if not record.id or record.id in ids:
                        continue
                    if record.id in referenced.get(task.object_name, ()) or task.references_any(record, kept):
                        ids.add(record.id)
                        changed = True

        for task in limited:
            total = len(task.source_data)
            task.keep_source_records(kept[task.object_name])
            self.context.logger.log("nonMasterRecordsKept", task.object_name, len(task.source_data), total)

    @staticmethod
    def _referenced_source_ids(tasks: List[MigrationJobTask], kept: Dict[str, Set[str]]) -> Dict[str, Set[str]]:
        """Source Ids looked up by kept records, by parent object name."""
        referenced: Dict[str, Set[str]] = {}
        for task in tasks:
            ids = kept[task.object_name]
            for record in task.source_data.records:
                if record.id not in ids:
                    continue
                for lookup in task.script_object.lookups.values():
                    value = record.get_str(lookup.field_name)
                    if not value:
                        continue
                    for parent_name in lookup.parent_names:
                        referenced.setdefault(parent_name, set()).add(value)
        return referenced

    async def _update_stage(self, mode: UpdateMode) -> None:
        tasks = [t for t in self.tasks if not t.operation.is_delete]
        if mode == UpdateMode.SECOND_UPDATE:
            tasks = [t for t in tasks if t.has_deferred_lookups]
        if mode == UpdateMode.FIRST_UPDATE and self.script.execute_tasks_in_parallel:
            await self._run_parallel(tasks, mode)
            return
        for task in tasks:
            if not task.is_terminated and mode == UpdateMode.FIRST_UPDATE:
                self.summary.update_order.append(task.object_name)
            await self._run_task(task, mode.value, lambda t=task: t.update_records(mode))

    async def _run_parallel(self, tasks: List[MigrationJobTask], mode: UpdateMode) -> None:
        """Run independent tasks concurrently; a task waits for its non-deferred parents scheduled before it."""
        finished: Dict[str, asyncio.Event] = {t.object_name: asyncio.Event() for t in self.tasks}
        semaphore = asyncio.Semaphore(DEFAULT_MAX_PARALLEL_EXEC_TASKS)

        async def run_one(task: MigrationJobTask) -> None:
            try:
                for parent in task.parent_tasks(include_deferred=False, before=task.order_position):
                    await finished[parent.object_name].wait()
                if task.is_terminated:
                    return
                async with semaphore:
                    self.summary.update_order.append(task.object_name)
                    await self._run_task(task, mode.value, lambda: task.update_records(mode))
            finally:
                finished[task.object_name].set()

        for task in self.tasks:
            if task not in tasks:
                finished[task.object_name].set()
        results = await asyncio.gather(*(run_one(t) for t in tasks), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

"""One object's unit of work inside a migration job."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple

from ..api.executor import ApiEngineExecutor
from ..api.factory import ApiEngineFactory
from ..api.models import ApiEngineRunOptions, ApiEngineSelectionOptions, CrudReport
from ..connections.base import BaseConnection
from ..constants import ID_FIELD_NAME
from ..exceptions import ConfigurationError, ExecutionError, UnresolvableReferenceError
from ..models.describe import LookupField, SObjectDescribe
from ..models.migration import MissingParentRecord, TaskState, TaskSummary, UpdateMode
from ..models.record import Record
from ..models.script import Operation, ScriptObject
from ..services.hooks import HookEvent, HookEventName
from ..services.record_filter import filter_records
from ..services.values import records_differ
from .task_data import TaskData

if TYPE_CHECKING:
    from .job import MigrationJob

logger = logging.getLogger(__name__)


class MigrationJobTask:
    """
    Execution unit of one script object.

    Lifecycle: CREATED -> FIRST_UPDATE -> SECOND_UPDATE (only when the
    task has deferred lookups) -> DONE. A deferred lookup points at an
    object scheduled at or after this task (self references included); it
    is left out of the first pass and resolved in the second, once the
    referenced records exist in the target.
    """

    def __init__(self, job: "MigrationJob", script_object: ScriptObject, target_external_id_parts: List[str]):
        self.job = job
        self.script_object = script_object
        self.context = job.context
        self.state = TaskState.CREATED
        self.update_mode: Optional[UpdateMode] = None
        case_insensitive = job.script.case_insensitive_external_ids
        self.source_data = TaskData(script_object.name, script_object.external_id_parts, True, case_insensitive)
        self.target_data = TaskData(self.target_object_name, target_external_id_parts, False, case_insensitive)
        # Matched external-id value -> target record
        self.source_to_target_record_map: Dict[str, Record] = {}
        # Source record Id -> target record Id
        self.source_to_target_id_map: Dict[str, str] = {}
        self.source_to_target_field_name_map: Dict[str, str] = {
            f: job.mapping.map_field_name_to_target(script_object.name, f)
            for f in script_object.fields_in_query
        }
        self.deferred_lookup_fields: List[str] = []
        self.order_position = 0
        # Source Ids of the records this task inserted
        self.inserted_source_ids: Set[str] = set()
        self.processed_records: List[Record] = []
        self.summary = TaskSummary(object_name=script_object.name, operation=script_object.operation.value)

    def __repr__(self) -> str:
        return f"MigrationJobTask({self.object_name}, {self.operation.value}, {self.state.value})"

    # ---- Properties ----

    @property
    def object_name(self) -> str:
        return self.script_object.name

    @property
    def target_object_name(self) -> str:
        return self.job.mapping.map_object_name_to_target(self.script_object.name)

    @property
    def operation(self) -> Operation:
        return self.script_object.operation

    @property
    def fields_in_query(self) -> List[str]:
        return self.script_object.fields_in_query

    @property
    def fields_to_update(self) -> List[str]:
        return self.script_object.fields_to_update

    @property
    def has_deferred_lookups(self) -> bool:
        return bool(self.deferred_lookup_fields)

    @property
    def has_relationships(self) -> bool:
        """True when the task looks up another task of the set or is looked up by one."""
        if self.parent_tasks():
            return True
        return any(self in task.parent_tasks() for task in self.job.tasks if task is not self)

    @property
    def processes_all_source_records(self) -> bool:
        obj = self.script_object
        return obj.master or obj.is_special or not self.has_relationships

    @property
    def is_terminated(self) -> bool:
        return self.state in (TaskState.FAILED, TaskState.SKIPPED)

    @property
    def needs_delete_stage(self) -> bool:
        obj = self.script_object
        return self.operation == Operation.DELETE or (obj.delete_old_data and not obj.is_readonly)

    def set_state(self, state: TaskState) -> None:
        logger.debug(f"{self.object_name}: {self.state.value} -> {state.value}")
        self.state = state
        self.summary.state = state

    def prepare(self, order_index: Dict[str, int]) -> None:
        """Mark lookups whose parent is scheduled at or after this task as deferred."""
        position = order_index[self.object_name]
        self.order_position = position
        self.deferred_lookup_fields = [
            name for name, lookup in self.script_object.lookups.items()
            if any(order_index.get(parent, -1) >= position for parent in lookup.parent_names)
            and name in self.fields_to_update
        ]

    def parent_tasks(self, include_deferred: bool = True, before: Optional[int] = None) -> List["MigrationJobTask"]:
        """
        Tasks of the set this task looks up.

        Args:
            include_deferred: Also follow the deferred lookups
            before: Only return parents whose order position is lower
        """
        tasks: List[MigrationJobTask] = []
        for name, lookup in self.script_object.lookups.items():
            if not include_deferred and name in self.deferred_lookup_fields:
                continue
            for parent_name in lookup.parent_names:
                task = self.job.get_task_by_object_name(parent_name)
                if task is None or task is self or task in tasks:
                    continue
                if before is not None and task.order_position >= before:
                    continue
                tasks.append(task)
        return tasks

    def fail(self, error: Exception) -> None:
        self.set_state(TaskState.FAILED)
        self.summary.errors.append({"error": str(error), "timestamp": datetime.utcnow().isoformat()})

    # ---- Query ----

    def _source_soql(self) -> str:
        query = self.script_object.parsed_query.copy(fields=list(self.fields_in_query))
        records_filter = self.script_object.source_records_filter.strip()
        if records_filter:
            query.where = f"({query.where}) AND ({records_filter})" if query.where else records_filter
        return query.to_soql()

    def _target_soql(self) -> str:
        query = self.script_object.parsed_query.copy(
            object_name=self.target_object_name,
            fields=list(self.script_object.target_fields_in_query),
        )
        if not self.script_object.is_readonly or self.script_object.query_all_target:
            query = query.copy(where="", order_by="", limit=None, offset=None)
        return query.to_soql()

    async def _query_source(self, soql: str) -> List[Record]:
        connection = self.job.source_connection
        query_all = self.script_object.use_query_all
        cache = self.job.cache
        if cache is not None and cache.enabled:
            identity = f"{connection.identity}/queryAll" if query_all else connection.identity
            return await cache.read_through(identity, soql, lambda: connection.query(soql, query_all=query_all))
        return await connection.query(soql, query_all=query_all)

    def _filter_records(self, records: List[Record], expression: str, side: str) -> List[Record]:
        """Apply a records filter in memory; an expression that cannot be parsed is skipped with a warning."""
        try:
            kept = filter_records(records, expression)
        except ConfigurationError as e:
            self.context.logger.warn("recordsFilterSkipped", self.object_name, side, e.message)
            return records
        self.context.logger.log("recordsFiltered", self.object_name, side, len(kept), len(records))
        return kept

    async def retrieve_records(self) -> None:
        """Query source and (when needed) target records and link them by external id."""
        obj = self.script_object
        soql = self._source_soql()
        event = self.context.hooks.dispatch(HookEvent(
            name=HookEventName.BEFORE_QUERY, object_name=self.object_name,
            operation=self.operation.value, query=soql,
        ))
        self._handle_hook_cancel(event)
        soql = event.query or soql

        self.context.logger.log("queryingRecords", self.object_name, "source")
        source_records = await self._query_source(soql)
        if obj.source_records_filter.strip() and not self.job.source_connection.evaluates_where:
            source_records = self._filter_records(source_records, obj.source_records_filter, "source")
        self.source_data.register_records(source_records)
        self.summary.source_records = len(self.source_data)
        self.context.logger.log("recordsRetrieved", self.object_name, len(source_records), "source")

        needs_target = self.operation != Operation.INSERT or obj.skip_existing_records
        if not needs_target:
            return
        self.context.logger.log("queryingRecords", self.object_name, "target")
        target_records = await self.job.target_connection.query(self._target_soql(), query_all=obj.query_all_target)
        self.target_data.register_records(target_records)
        self.summary.target_records = len(self.target_data)
        self.context.logger.log("recordsRetrieved", self.object_name, len(target_records), "target")

        for record in self.source_data.records:
            value = self.source_data.get_external_id_value(record)
            target = self.target_data.get_record_by_external_id(value)
            if target is not None:
                self._link_source_to_target(record, target, value)

    def _link_source_to_target(self, source: Record, target: Record, ext_id_value: Optional[str] = None) -> None:
        if ext_id_value:
            self.source_to_target_record_map[ext_id_value] = target
        if source.id and target.id:
            self.source_to_target_id_map[source.id] = target.id

    def keep_source_records(self, ids: Set[str]) -> None:
        """Drop the source records whose Id is not in ``ids``."""
        self.source_data.keep_only(ids)
        self.source_to_target_id_map = {s: t for s, t in self.source_to_target_id_map.items() if s in ids}
        self.summary.source_records = len(self.source_data)

    def references_any(self, record: Record, kept_ids: Dict[str, Set[str]]) -> bool:
        """True when one of the record's lookup values is the Id of a kept parent record."""
        for lookup in self.script_object.lookups.values():
            raw = record.get_str(lookup.field_name)
            if raw and any(raw in kept_ids.get(parent, ()) for parent in lookup.parent_names):
                return True
        return False

    def get_target_record(self, source: Record) -> Optional[Record]:
        target_id = self.source_to_target_id_map.get(source.id) if source.id else None
        if target_id:
            return self.target_data.id_records_map.get(target_id)
        return self.source_to_target_record_map.get(self.source_data.get_external_id_value(source) or "")

    # ---- Delete ----

    def _delete_soql(self, object_name: str) -> str:
        obj = self.script_object
        if obj.has_delete_query:
            return obj.delete_query
        query = obj.parsed_query.copy(object_name=object_name, fields=[ID_FIELD_NAME], order_by="",
                                      limit=None, offset=None)
        return query.to_soql()

    async def delete_records(self) -> int:
        """
        Delete stage of the task.

        ``DeleteSource`` deletes the source records, ``DeleteHierarchy``
        deletes the target records matching the source records, ``Delete``
        and ``HardDelete`` delete the target records selected by the delete
        query (or the object's WHERE clause). ``deleteOldData`` on a writing
        object deletes the target records before the update passes.

        Returns:
            Number of records deleted without error
        """
        obj = self.script_object
        if obj.delete_from_source:
            return await self.delete_source_records()
        if obj.delete_by_hierarchy:
            await self.retrieve_records()
            records = [Record({ID_FIELD_NAME: target_id})
                       for target_id in dict.fromkeys(self.source_to_target_id_map.values())]
            return await self._delete(records, self.job.target_connection, self.target_object_name)
        return await self.delete_old_records()

    async def delete_old_records(self) -> int:
        """Delete the target records selected by the delete query."""
        connection = self.job.target_connection
        records = await connection.query(self._delete_soql(self.target_object_name))
        return await self._delete(records, connection, self.target_object_name)

    async def delete_source_records(self) -> int:
        connection = self.job.source_connection
        records = await connection.query(self._delete_soql(self.object_name))
        return await self._delete(records, connection, self.object_name)

    async def _delete(self, records: List[Record], connection: BaseConnection, object_name: str) -> int:
        if not records:
            self.context.logger.log("nothingToDelete", self.object_name)
            return 0
        self.context.logger.log("deletingRecords", self.object_name, len(records))
        operation = Operation.HARD_DELETE if self.script_object.hard_delete else Operation.DELETE
        records = [Record({ID_FIELD_NAME: r.id}) for r in records if r.id]
        report = await self._execute(operation, records, connection, object_name=object_name)
        deleted = report.processed - report.failed
        self.summary.deleted += deleted
        return deleted

    # ---- Update ----

    def _update_fields(self, mode: UpdateMode) -> List[str]:
        if mode == UpdateMode.FIRST_UPDATE:
            return [f for f in self.fields_to_update if f not in self.deferred_lookup_fields]
        return list(self.deferred_lookup_fields)

    def resolve_lookup(self, lookup: LookupField, source: Record, mode: UpdateMode) -> Optional[str]:
        """
        Translate a source lookup value into a target Id.

        The parent's source Id is tried first against the parent task's
        source-to-target links, then the parent external-id values carried
        on the record (``Account.Name``) against the parent's target records.
        An unresolved non-empty value is recorded as a missing parent.
        """
        raw = source.get_str(lookup.field_name)
        ext_value: Optional[str] = None
        for parent_name in lookup.parent_names:
            parent = self.job.get_task_by_object_name(parent_name)
            if parent is None:
                continue
            if raw and raw in parent.source_to_target_id_map:
                return parent.source_to_target_id_map[raw]
            paths = lookup.external_id_paths.get(parent_name) or []
            if paths:
                value = parent.target_data.compose_external_id(source.get_value(p) for p in paths)
                target_id = parent.target_data.ext_id_to_record_id_map.get(value) if value else None
                if target_id:
                    return target_id
                ext_value = ext_value or value

        if raw or ext_value:
            self.summary.missing_parents.append(MissingParentRecord(
                object_name=self.object_name,
                field_name=lookup.field_name,
                source_record_id=source.id,
                lookup_value=ext_value or raw,
                update_mode=mode.value,
            ))
            self.context.logger.debug("missingParentRecord", self.object_name, lookup.field_name, ext_value or raw)
        return None

    def _build_payloads(self, mode: UpdateMode, fields: List[str]) -> List[Tuple[Record, Record]]:
        pairs: List[Tuple[Record, Record]] = []
        for source in self.source_data.records:
            if mode == UpdateMode.SECOND_UPDATE and self.get_target_record(source) is None:
                continue
            payload = Record()
            for name in fields:
                lookup = self.script_object.lookups.get(name)
                payload[name] = self.resolve_lookup(lookup, source, mode) if lookup else source.get_value(name)
            pairs.append((source, payload))
        return pairs

    @staticmethod
    def _strip_fields(record: Record, describe: Optional[SObjectDescribe], for_insert: bool) -> Record:
        if describe is None or not describe.is_described:
            return record
        for name in list(record.keys()):
            if name == ID_FIELD_NAME:
                continue
            field = describe.get_field(name)
            if field is None:
                continue
            if (for_insert and not field.creatable) or (not for_insert and not field.updateable):
                del record[name]
        return record

    def _classify(self, mode: UpdateMode, pairs: List[Tuple[Record, Record]]):
        obj = self.script_object
        describe = obj.target_describe
        inserts: List[Tuple[Record, Record]] = []
        updates: List[Tuple[Record, Record]] = []
        for source, payload in pairs:
            mapped = self.job.mapping.map_record_to_target(self.object_name, payload)
            target = self.get_target_record(source)
            if target is None:
                if mode == UpdateMode.FIRST_UPDATE and self.operation in (Operation.INSERT, Operation.UPSERT):
                    inserts.append((source, self._strip_fields(mapped, describe, for_insert=True)))
                continue
            if self.operation == Operation.INSERT or obj.skip_existing_records:
                if mode == UpdateMode.FIRST_UPDATE or source.id not in self.inserted_source_ids:
                    continue
            if not obj.skip_records_comparison and not records_differ(mapped, target, list(mapped.keys())):
                self.summary.skipped_unchanged += 1
                continue
            mapped = self._strip_fields(mapped, describe, for_insert=False)
            mapped.id = target.id
            updates.append((source, mapped))
        return inserts, updates

    async def update_records(self, mode: UpdateMode) -> int:
        """
        Run one update pass.

        Builds the payloads from the source records, resolves lookups,
        applies values mapping and the filter hook, splits the records into
        inserts (no target match) and updates (target match with changed
        values), executes both through the API layer and folds the results
        back into the target data.

        Returns:
            Number of records inserted or updated without error
        """
        obj = self.script_object
        self.update_mode = mode
        self.set_state(TaskState(mode.value.lower()))
        if obj.is_readonly or self.operation.is_delete:
            return 0
        fields = self._update_fields(mode)
        if not fields and mode == UpdateMode.SECOND_UPDATE:
            return 0

        missing_before = len(self.summary.missing_parents)
        pairs = self._build_payloads(mode, fields)
        if obj.uses_values_mapping and self.job.values_mapper is not None:
            self.job.values_mapper.apply(self.object_name, [p for _, p in pairs])

        event = self.context.hooks.dispatch(HookEvent(
            name=HookEventName.FILTER_RECORDS, object_name=self.object_name,
            operation=self.operation.value, update_mode=mode.value, records=[p for _, p in pairs],
        ))
        self._handle_hook_cancel(event)
        kept = {id(r) for r in event.records}
        pairs = [(s, p) for s, p in pairs if id(p) in kept]
        if obj.target_records_filter.strip():
            kept = {id(r) for r in self._filter_records([p for _, p in pairs], obj.target_records_filter, "target")}
            pairs = [(s, p) for s, p in pairs if id(p) in kept]

        inserts, updates = self._classify(mode, pairs)
        event = self.context.hooks.dispatch(HookEvent(
            name=HookEventName.BEFORE_UPDATE, object_name=self.object_name,
            operation=self.operation.value, update_mode=mode.value,
            records=[m for _, m in inserts + updates],
            data={"inserts": [m for _, m in inserts], "updates": [m for _, m in updates]},
        ))
        self._handle_hook_cancel(event)
        self.context.logger.log("updatePassStarted", self.object_name, mode.value, len(inserts), len(updates))

        done = 0
        target = self.job.target_connection
        if inserts:
            await self._execute(Operation.INSERT, [m for _, m in inserts], target, update_record_id=True)
            for source, record in inserts:
                if record.has_errors or not record.id:
                    continue
                stored = record.without("Errors")
                self.target_data.register_record(stored, self.source_data.get_external_id_value(source))
                self._link_source_to_target(source, stored, self.source_data.get_external_id_value(source))
                if source.id:
                    self.inserted_source_ids.add(source.id)
                self.summary.inserted += 1
                done += 1
        if updates:
            await self._execute(Operation.UPDATE, [m for _, m in updates], target)
            for source, record in updates:
                if record.has_errors:
                    continue
                self.target_data.register_record(record.without("Errors"))
                self.summary.updated += 1
                done += 1

        processed = [m for _, m in inserts + updates]
        self.processed_records.extend(processed)
        event = self.context.hooks.dispatch(HookEvent(
            name=HookEventName.AFTER_UPDATE, object_name=self.object_name,
            operation=self.operation.value, update_mode=mode.value, records=processed,
        ))
        self._handle_hook_cancel(event)

        missing = len(self.summary.missing_parents) - missing_before
        if missing:
            self.context.logger.warn("missingParentRecords", self.object_name, missing, mode.value)
            if self.job.script.fail_on_missing_parent_records:
                first = self.summary.missing_parents[missing_before]
                raise UnresolvableReferenceError(
                    f"{missing} lookup value(s) could not be resolved (first: {first.lookup_value})",
                    self.object_name, first.field_name)
        return done

    # ---- Execution ----

    def _handle_hook_cancel(self, event: HookEvent) -> None:
        if event.cancel_requested:
            self.context.request_cancel(event.cancel_reason or "cancelled by hook")

    async def _execute(
        self,
        operation: Operation,
        records: List[Record],
        connection: BaseConnection,
        update_record_id: bool = False,
        object_name: Optional[str] = None,
    ) -> CrudReport:
        obj = self.script_object
        script = self.job.script
        object_name = object_name or self.target_object_name
        selection = ApiEngineSelectionOptions(
            amount_to_process=len(records),
            bulk_threshold=script.bulk_threshold,
            always_use_rest=(script.always_use_rest_api_to_update_records or obj.always_use_rest_api
                             or not connection.supports_bulk_api),
            force_bulk=obj.force_bulk_api and connection.supports_bulk_api,
            bulk_api_version=script.bulk_api_version,
            object_name=object_name,
        )
        options = ApiEngineRunOptions(
            connection=connection,
            object_name=object_name,
            operation=operation,
            records=records,
            update_record_id=update_record_id,
            simulation_mode=script.simulation_mode,
            all_or_none=script.all_or_none,
            rest_api_batch_size=obj.rest_api_batch_size or script.rest_api_batch_size,
            bulk_api_v1_batch_size=obj.bulk_api_v1_batch_size or script.bulk_api_v1_batch_size,
            parallel_rest_jobs=obj.parallel_rest_jobs if (obj.parallel_rest_jobs or 0) > 0 else script.parallel_rest_jobs,
            parallel_bulk_jobs=obj.parallel_bulk_jobs if (obj.parallel_bulk_jobs or 0) > 0 else script.parallel_bulk_jobs,
            polling_interval_ms=script.polling_interval_ms,
            polling_timeout_ms=script.polling_timeout_ms,
            concurrency_mode=script.concurrency_mode,
        )
        engine = ApiEngineFactory.create_engine(selection, self.context)
        try:
            report = await ApiEngineExecutor(engine, options).execute_crud()
        except ExecutionError as e:
            if e.object_name:
                raise
            raise ExecutionError(e.message, self.object_name, e.error_code) from e
        if report.engine.value not in self.summary.engines:
            self.summary.engines.append(report.engine.value)
        self.summary.failed += report.failed
        return report

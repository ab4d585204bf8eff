"""Bulk API v2 engine: CSV ingest jobs, one per parallel chunk."""

import asyncio
import hashlib
import logging
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from ..connections.base import format_csv_value
from ..constants import BULK_V2_ERROR_FIELD, BULK_V2_ID_FIELD, ID_FIELD_NAME
from ..exceptions import ExecutionError
from ..messages import format_message
from ..models.record import CrudResult, Record
from ..models.script import Operation
from .base import ApiEngine, apply_crud_results, fix_records, poll_until, split_for_parallel_jobs
from .models import ApiEngineRunOptions, EngineType

logger = logging.getLogger(__name__)

BULK_V2_OPERATIONS = {
    Operation.INSERT: "insert",
    Operation.UPDATE: "update",
    Operation.UPSERT: "upsert",
    Operation.DELETE: "delete",
    Operation.DELETE_SOURCE: "delete",
    Operation.DELETE_HIERARCHY: "delete",
    Operation.HARD_DELETE: "hardDelete",
}

JOB_DONE_STATES = ("JobComplete", "Failed", "Aborted")


def payload_hash(row: Dict[str, Any], columns: List[str]) -> str:
    """Hash of a row's uploaded columns, as rendered in the CSV payload."""
    text = "\x1f".join(f"{c}={format_csv_value(row.get(c))}" for c in sorted(columns))
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


class BulkApiV2Engine(ApiEngine):
    """
    Applies records through Bulk API v2 ingest jobs.

    Results come back as three unordered CSV sets (successful, failed,
    unprocessed). They are matched to the submitted records by Id when
    every record has one and the operation is not Insert, otherwise by a
    hash of the uploaded values.
    """

    engine_type = EngineType.BULK_V2

    async def execute_crud(self, options: ApiEngineRunOptions) -> List[Record]:
        if not options.records:
            return []
        jobs = max(options.parallel_bulk_jobs or 1, 1)
        chunks = split_for_parallel_jobs(options.records, jobs)
        semaphore = asyncio.Semaphore(jobs)

        async def run_chunk(chunk: List[Record]) -> List[Record]:
            async with semaphore:
                return await self._execute_job(options, chunk)

        results = await asyncio.gather(*(run_chunk(c) for c in chunks))
        return [record for chunk in results for record in chunk]

    async def _execute_job(self, options: ApiEngineRunOptions, records: List[Record]) -> List[Record]:
        if options.simulation_mode:
            return self.simulate(options, records, "SIMULATION")

        fix_records(records)
        connection = options.connection
        payload = [self._payload(options.operation, r) for r in records]
        columns = sorted({key for row in payload for key in row})

        job_id = await connection.bulk_v2_create_job(
            options.object_name,
            BULK_V2_OPERATIONS[options.operation],
            ID_FIELD_NAME if options.operation == Operation.UPSERT else None,
        )
        self.log_started(options, job_id, len(records))
        await connection.bulk_v2_upload(job_id, payload)
        await connection.bulk_v2_close_job(job_id)

        async def fetch_state():
            return await connection.bulk_v2_job_state(job_id)

        try:
            state, message = await poll_until(
                fetch_state,
                JOB_DONE_STATES,
                options.polling_interval_ms,
                options.polling_timeout_ms,
                lambda s: self.context.logger.debug("apiJobPolling", options.object_name, job_id, s),
            )
        except ExecutionError as e:
            self.context.logger.error("apiJobTimeout", options.object_name, job_id, options.polling_timeout_ms)
            raise ExecutionError(e.message, options.object_name) from e
        if state != "JobComplete":
            self.context.logger.error("apiJobFailed", options.object_name, job_id, state, message or "")
            raise ExecutionError(f"Bulk job {job_id} ended in state {state}: {message or ''}", options.object_name)

        rows = await connection.bulk_v2_job_results(job_id)
        results = self._match_results(options.operation, records, payload, columns, rows)
        processed, failed = apply_crud_results(
            records, results, options.update_record_id and options.operation == Operation.INSERT)
        self.log_completed(options, job_id, processed, failed)
        return records

    @staticmethod
    def _payload(operation: Operation, record: Record) -> Dict[str, Any]:
        if operation.is_delete:
            return {ID_FIELD_NAME: record.id}
        excluded = ("Errors", ID_FIELD_NAME) if operation == Operation.INSERT else ("Errors",)
        return {k: v for k, v in record.items()
                if k not in excluded and "." not in k and not k.startswith("___")}

    @staticmethod
    def _match_results(
        operation: Operation,
        records: List[Record],
        payload: List[Dict[str, Any]],
        columns: List[str],
        rows: Dict[str, List[Dict[str, Any]]],
    ) -> List[Optional[CrudResult]]:
        by_id = operation != Operation.INSERT and all(r.id for r in records)
        index: Dict[str, Deque[CrudResult]] = defaultdict(deque)

        def add(row: Dict[str, Any], result: CrudResult) -> None:
            key = (row.get(BULK_V2_ID_FIELD) or row.get(ID_FIELD_NAME)) if by_id else payload_hash(row, columns)
            if key:
                index[key].append(result)

        for row in rows.get("successful", []):
            add(row, CrudResult(id=row.get(BULK_V2_ID_FIELD) or None, success=True))
        for row in rows.get("failed", []):
            add(row, CrudResult(id=row.get(BULK_V2_ID_FIELD) or None, success=False,
                                errors=[row.get(BULK_V2_ERROR_FIELD) or "Unknown error"]))
        for row in rows.get("unprocessed", []):
            add(row, CrudResult(id=row.get(ID_FIELD_NAME) or None, success=False,
                                errors=[format_message("unprocessedRecord")]))

        results: List[Optional[CrudResult]] = []
        for record, row in zip(records, payload):
            key = record.id if by_id else payload_hash(row, columns)
            queue = index.get(key)
            results.append(queue.popleft() if queue else None)
        return results

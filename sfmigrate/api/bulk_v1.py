"""Bulk API v1 engine: one job, serial JSON batches polled to completion."""

import logging
from typing import List

from ..constants import DEFAULT_BULK_API_V1_BATCH_SIZE, ID_FIELD_NAME
from ..exceptions import ExecutionError
from ..models.record import Record
from ..models.script import Operation
from .base import ApiEngine, apply_crud_results, chunk_records, fix_records, poll_until
from .models import ApiEngineRunOptions, EngineType

logger = logging.getLogger(__name__)

BULK_V1_OPERATIONS = {
    Operation.INSERT: "insert",
    Operation.UPDATE: "update",
    Operation.UPSERT: "upsert",
    Operation.DELETE: "delete",
    Operation.DELETE_SOURCE: "delete",
    Operation.DELETE_HIERARCHY: "delete",
    Operation.HARD_DELETE: "hardDelete",
}

BATCH_DONE_STATES = ("Completed", "Failed", "Not Processed")


class BulkApiV1Engine(ApiEngine):
    """Applies records through a Bulk API v1 job, one batch at a time."""

    engine_type = EngineType.BULK_V1

    async def execute_crud(self, options: ApiEngineRunOptions) -> List[Record]:
        records = options.records
        if not records:
            return []
        if options.simulation_mode:
            return self.simulate(options, records, "SIMULATION")

        fix_records(records)
        connection = options.connection
        operation = BULK_V1_OPERATIONS[options.operation]
        job_id = await connection.bulk_v1_create_job(
            options.object_name,
            operation,
            options.concurrency_mode,
            ID_FIELD_NAME if options.operation == Operation.UPSERT else None,
        )
        self.log_started(options, job_id, len(records))
        processed = failed = 0
        try:
            batches = chunk_records(records, options.bulk_api_v1_batch_size or DEFAULT_BULK_API_V1_BATCH_SIZE)
            for number, batch in enumerate(batches, start=1):
                payload = [self._payload(options.operation, r) for r in batch]
                batch_id = await connection.bulk_v1_add_batch(job_id, payload)

                async def fetch_state():
                    return await connection.bulk_v1_batch_state(job_id, batch_id)

                state, message = await poll_until(
                    fetch_state,
                    BATCH_DONE_STATES,
                    options.polling_interval_ms,
                    options.polling_timeout_ms,
                    lambda s: self.context.logger.debug("apiJobPolling", options.object_name, batch_id, s),
                )
                if state != "Completed":
                    self.context.logger.error("apiJobFailed", options.object_name, batch_id, state, message or "")
                    raise ExecutionError(f"Bulk batch {batch_id} ended in state {state}: {message or ''}",
                                         options.object_name)

                results = await connection.bulk_v1_batch_results(job_id, batch_id)
                batch_processed, batch_failed = apply_crud_results(batch, results, options.update_record_id)
                self.log_batch_completed(options, job_id, number, batch_processed, batch_failed)
                processed += batch_processed
                failed += batch_failed
        except ExecutionError as e:
            if e.object_name:
                raise
            raise ExecutionError(e.message, options.object_name, e.error_code) from e
        finally:
            await connection.bulk_v1_close_job(job_id)

        self.log_completed(options, job_id, processed, failed)
        return records

    @staticmethod
    def _payload(operation: Operation, record: Record) -> dict:
        if operation.is_delete:
            return {ID_FIELD_NAME: record.id}
        if operation == Operation.INSERT:
            return dict(record.without(ID_FIELD_NAME, "Errors"))
        return dict(record.without("Errors"))

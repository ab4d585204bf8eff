"""REST engine: per-call CRUD with serial batches and parallel chunks."""

import asyncio
import logging
from typing import List

from ..constants import ID_FIELD_NAME, REST_API_JOB_ID
from ..models.record import CrudResult, Record
from ..models.script import Operation
from .base import ApiEngine, apply_crud_results, chunk_records, fix_records, merge_purge_results, split_for_parallel_jobs
from .models import ApiEngineRunOptions, EngineType

logger = logging.getLogger(__name__)


class RestApiEngine(ApiEngine):
    """
    Applies records through the connection's REST CRUD calls.

    With ``parallel_rest_jobs > 1`` the records are first partitioned into
    that many chunks which run concurrently; inside a chunk, batches run
    serially. Output order is chunk order, then submission order.
    """

    engine_type = EngineType.REST

    async def execute_crud(self, options: ApiEngineRunOptions) -> List[Record]:
        if not options.records:
            return []
        jobs = max(options.parallel_rest_jobs or 1, 1)
        chunks = split_for_parallel_jobs(options.records, jobs)
        semaphore = asyncio.Semaphore(jobs)

        async def run_chunk(index: int, chunk: List[Record]) -> List[Record]:
            async with semaphore:
                return await self._execute_chunk(options, chunk, index)

        results = await asyncio.gather(*(run_chunk(i, c) for i, c in enumerate(chunks)))
        return [record for chunk in results for record in chunk]

    async def _execute_chunk(self, options: ApiEngineRunOptions, chunk: List[Record], index: int) -> List[Record]:
        job_id = f"{REST_API_JOB_ID}-{index + 1}" if index else REST_API_JOB_ID
        if options.simulation_mode:
            return self.simulate(options, chunk, job_id)

        fix_records(chunk)
        self.log_started(options, job_id, len(chunk))
        processed = failed = 0
        batches = chunk_records(chunk, options.rest_api_batch_size or len(chunk))
        for number, batch in enumerate(batches, start=1):
            results = await self._dispatch(options, batch)
            batch_processed, batch_failed = apply_crud_results(batch, results, options.update_record_id)
            self.log_batch_completed(options, job_id, number, batch_processed, batch_failed)
            processed += batch_processed
            failed += batch_failed
        self.log_completed(options, job_id, processed, failed)
        return chunk

    async def _dispatch(self, options: ApiEngineRunOptions, batch: List[Record]) -> List[CrudResult]:
        connection = options.connection
        operation = options.operation
        if operation == Operation.INSERT:
            return await connection.create(options.object_name, batch, options.all_or_none)
        if operation == Operation.UPDATE:
            return await connection.update(options.object_name, batch, options.all_or_none)
        if operation == Operation.UPSERT:
            return await connection.upsert(options.object_name, batch, ID_FIELD_NAME, options.all_or_none)

        ids = [record.id for record in batch]
        results = await connection.destroy(options.object_name, ids, options.all_or_none)
        if operation == Operation.HARD_DELETE:
            deleted = [r.id for r in results if r.is_success and r.id]
            if deleted:
                purge_results = await connection.empty_recycle_bin(deleted)
                results = merge_purge_results(results, purge_results)
        return results

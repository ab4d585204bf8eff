"""API engine interface and the record helpers shared by all engines."""

import asyncio
import logging
import math
import random
import string
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

from ..constants import NOT_AVAILABLE_VALUE, SIMULATED_ID_LENGTH
from ..exceptions import ExecutionError
from ..messages import format_message
from ..models.record import CrudResult, Record
from ..models.script import Operation
from .models import ApiEngineRunOptions, EngineType

if TYPE_CHECKING:
    from ..context import RunContext

logger = logging.getLogger(__name__)


class ApiEngine(ABC):
    """A transport strategy: REST, Bulk v1 or Bulk v2."""

    engine_type: EngineType

    def __init__(self, context: "RunContext"):
        self.context = context

    @abstractmethod
    async def execute_crud(self, options: ApiEngineRunOptions) -> List[Record]:
        """
        Apply ``options.operation`` to ``options.records``.

        Every submitted record comes back, in submission order, with its
        ``Errors`` field set (None when clean) and, when
        ``options.update_record_id`` is set, its new Id.
        """
        pass

    def log_started(self, options: ApiEngineRunOptions, job_id: str, count: int) -> None:
        self.context.logger.log("apiOperationStarted", options.object_name, self.engine_type.value,
                                options.operation.value, job_id, count)

    def log_completed(self, options: ApiEngineRunOptions, job_id: str, processed: int, failed: int) -> None:
        tokens = (options.object_name, self.engine_type.value, options.operation.value, job_id, processed, failed)
        if failed:
            self.context.logger.warn("apiOperationCompleted", *tokens)
        else:
            self.context.logger.log("apiOperationCompleted", *tokens)

    def log_batch_completed(self, options: ApiEngineRunOptions, job_id: str, batch_number: int,
                            processed: int, failed: int) -> None:
        tokens = (options.object_name, self.engine_type.value, options.operation.value, job_id,
                  batch_number, processed, failed)
        if failed:
            self.context.logger.warn("apiBatchCompleted", *tokens)
        else:
            self.context.logger.log("apiBatchCompleted", *tokens)

    def simulate(self, options: ApiEngineRunOptions, records: List[Record], job_id: str) -> List[Record]:
        """Stand-in for a transport call: no network, locally generated ids."""
        self.log_started(options, job_id, len(records))
        generated = apply_simulation_ids(records, options.operation, options.update_record_id)
        if generated:
            self.context.logger.log("simulationModeInsert", options.object_name, generated)
        self.log_completed(options, job_id, len(records), 0)
        return records


# ---- Pure helpers ----

def chunk_records(records: Sequence[Record], size: Optional[int]) -> List[List[Record]]:
    """Split into consecutive batches of ``size``; only the last may be shorter."""
    if not records:
        return []
    size = size if size and size > 0 else len(records)
    return [list(records[i:i + size]) for i in range(0, len(records), size)]


def split_for_parallel_jobs(records: Sequence[Record], jobs: int) -> List[List[Record]]:
    """Partition into at most ``jobs`` roughly equal chunks of ``ceil(n / jobs)``."""
    jobs = max(jobs or 1, 1)
    return chunk_records(records, math.ceil(len(records) / jobs) if records else 0)


def fix_records(records: Iterable[Record]) -> None:
    """Replace ``#N/A`` placeholders with None in place."""
    for record in records:
        for key, value in record.items():
            if value == NOT_AVAILABLE_VALUE:
                record[key] = None


def generate_simulated_id(length: int = SIMULATED_ID_LENGTH) -> str:
    return "".join(random.choices(string.ascii_letters + string.digits, k=length))


def apply_simulation_ids(records: Iterable[Record], operation: Operation, update_record_id: bool) -> int:
    """Clear errors and, for Insert with id propagation, assign local ids."""
    generated = 0
    for record in records:
        if operation == Operation.INSERT and update_record_id:
            record.id = generate_simulated_id()
            generated += 1
        record.errors = None
    return generated


def format_crud_errors(errors: Iterable[str]) -> Optional[str]:
    text = "; ".join(e for e in errors if e)
    return text or None


def apply_crud_results(
    records: Sequence[Record],
    results: Sequence[Optional[CrudResult]],
    update_record_id: bool,
) -> Tuple[int, int]:
    """
    Stamp index-aligned results onto the submitted records.

    A record without a result is marked failed as an invalid record.

    Returns:
        (processed, failed) counts
    """
    processed = failed = 0
    for index, record in enumerate(records):
        result = results[index] if index < len(results) else None
        processed += 1
        if result is None:
            record.errors = format_message("invalidRecordHashcode")
            failed += 1
            continue
        if update_record_id and result.id:
            record.id = result.id
        record.errors = format_crud_errors(result.errors)
        if record.errors or result.success is False:
            if not record.errors:
                record.errors = "Unknown error"
            failed += 1
    return processed, failed


def merge_purge_results(delete_results: Sequence[CrudResult], purge_results: Sequence[CrudResult]) -> List[CrudResult]:
    """
    Substitute purge results into delete results by id.

    The delete order and length are preserved; delete results without a
    matching purge result are kept unchanged.
    """
    by_id = {r.id: r for r in purge_results if r.id}
    return [by_id.get(r.id, r) if r.id else r for r in delete_results]


async def poll_until(
    fetch_state: Callable[[], Awaitable[Tuple[str, Optional[str]]]],
    done_states: Iterable[str],
    interval_ms: int,
    timeout_ms: int,
    on_state: Optional[Callable[[str], None]] = None,
) -> Tuple[str, Optional[str]]:
    """
    Poll a job until it reaches one of ``done_states``.

    Raises:
        ExecutionError: when the deadline passes first
    """
    done = set(done_states)
    deadline = time.monotonic() + timeout_ms / 1000.0
    while True:
        state, message = await fetch_state()
        if on_state is not None:
            on_state(state)
        if state in done:
            return state, message
        if time.monotonic() >= deadline:
            raise ExecutionError(f"Job did not complete within {timeout_ms} ms (last state {state})")
        await asyncio.sleep(interval_ms / 1000.0)

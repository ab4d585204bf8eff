"""Message templates keyed by message id.

Engine, task and job code only pass a key and positional tokens; the
text lives here.
"""

from typing import Dict

MESSAGES: Dict[str, str] = {
    # Script
    "scriptLoaded": "Script loaded: {0} object set(s), {1} object(s)",
    # Job
    "objectSetStarted": "=== OBJECT SET {0} ===",
    "executionOrder": "Execution order ({0}): {1}",
    "taskStarted": "{0}: {1} started",
    "taskCompleted": "{0}: {1} completed",
    "taskFailed": "{0}: {1} failed: {2}",
    "taskSkippedParentFailed": "{0}: skipped because parent task {1} failed",
    "jobCancelled": "Job cancelled: {0}",
    "queryingRecords": "{0}: querying {1} records",
    "recordsRetrieved": "{0}: {1} {2} record(s) retrieved",
    "recordsFiltered": "{0}: {1} filter kept {2} of {3} record(s)",
    "recordsFilterSkipped": "{0}: {1} filter not applied: {2}",
    "nonMasterRecordsKept": "{0}: {1} of {2} source record(s) kept, related to master objects",
    "deletingRecords": "{0}: deleting {1} record(s)",
    "nothingToDelete": "{0}: nothing to delete",
    "updatePassStarted": "{0}: {1}, {2} record(s) to insert, {3} record(s) to update",
    "missingParentRecord": "{0}.{1}: parent record not found for value {2}",
    "missingParentRecords": "{0}: {1} lookup value(s) without a parent record ({2})",
    # API layer
    "apiEngineSelected": "{0}: {1} selected to process {2} record(s)",
    "apiOperationStarted": "{0}: {1} {2} job {3} started, {4} record(s)",
    "apiOperationCompleted": "{0}: {1} {2} job {3} completed, processed {4}, failed {5}",
    "apiBatchCompleted": "{0}: {1} {2} job {3} batch {4} completed, processed {5}, failed {6}",
    "apiJobPolling": "{0}: job {1} state {2}",
    "apiJobTimeout": "{0}: job {1} did not complete within {2} ms",
    "apiJobFailed": "{0}: job {1} finished in state {2}: {3}",
    "simulationModeInsert": "{0}: simulation mode, {1} record id(s) generated locally",
    "invalidRecordHashcode": "Invalid record: no result returned for the submitted record",
    "unprocessedRecord": "Unprocessed record: the job ended before this record was processed",
}


def format_message(key: str, *tokens) -> str:
    """Render a message by key. Unknown keys render the key and tokens."""
    template = MESSAGES.get(key)
    if template is None:
        return " ".join([key, *[str(t) for t in tokens]])
    return template.format(*tokens)

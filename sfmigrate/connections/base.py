"""Base connection interface for data endpoints."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import ExecutionError
from ..models.describe import SObjectDescribe
from ..models.record import CrudResult, Record


class BaseConnection(ABC):
    """
    Base class for endpoint connections.

    A connection exposes describe, query and CRUD primitives. Bulk job
    primitives are optional; endpoints without them raise ExecutionError
    and the engine factory never selects a bulk engine for them.
    """

    supports_bulk_api: bool = False
    is_file_media: bool = False
    evaluates_where: bool = False

    def __init__(self, identity: str, api_version: str):
        """
        Initialize the connection.

        Args:
            identity: Stable endpoint identity used as a cache key
            api_version: Remote API version, e.g. ``65.0``
        """
        self.identity = identity
        self.api_version = api_version

    @abstractmethod
    async def describe_sobject(self, object_name: str) -> Optional[SObjectDescribe]:
        """Describe an object, or None when the endpoint has no metadata."""
        pass

    @abstractmethod
    async def query(self, soql: str, query_all: bool = False) -> List[Record]:
        """
        Run a query; relationship values are flattened to dotted keys.

        With ``query_all`` deleted and archived rows are returned as well.
        """
        pass

    @abstractmethod
    async def create(self, object_name: str, records: List[Record], all_or_none: bool = False) -> List[CrudResult]:
        pass

    @abstractmethod
    async def update(self, object_name: str, records: List[Record], all_or_none: bool = False) -> List[CrudResult]:
        pass

    @abstractmethod
    async def upsert(
        self,
        object_name: str,
        records: List[Record],
        external_id_field: str = "Id",
        all_or_none: bool = False,
    ) -> List[CrudResult]:
        pass

    @abstractmethod
    async def destroy(self, object_name: str, ids: List[str], all_or_none: bool = False) -> List[CrudResult]:
        pass

    async def empty_recycle_bin(self, ids: List[str]) -> List[CrudResult]:
        """Purge deleted records. Endpoints without a recycle bin purge nothing."""
        return []

    # ---- Bulk API v1 ----

    async def bulk_v1_create_job(
        self, object_name: str, operation: str, concurrency_mode: str = "Parallel",
        external_id_field: Optional[str] = None,
    ) -> str:
        raise ExecutionError("Bulk API v1 is not supported by this endpoint", object_name)

    async def bulk_v1_add_batch(self, job_id: str, records: List[Dict[str, Any]]) -> str:
        raise ExecutionError("Bulk API v1 is not supported by this endpoint")

    async def bulk_v1_batch_state(self, job_id: str, batch_id: str) -> Tuple[str, Optional[str]]:
        raise ExecutionError("Bulk API v1 is not supported by this endpoint")

    async def bulk_v1_batch_results(self, job_id: str, batch_id: str) -> List[CrudResult]:
        raise ExecutionError("Bulk API v1 is not supported by this endpoint")

    async def bulk_v1_close_job(self, job_id: str) -> None:
        raise ExecutionError("Bulk API v1 is not supported by this endpoint")

    # ---- Bulk API v2 ----

    async def bulk_v2_create_job(
        self, object_name: str, operation: str, external_id_field: Optional[str] = None,
    ) -> str:
        raise ExecutionError("Bulk API v2 is not supported by this endpoint", object_name)

    async def bulk_v2_upload(self, job_id: str, records: List[Dict[str, Any]]) -> None:
        raise ExecutionError("Bulk API v2 is not supported by this endpoint")

    async def bulk_v2_close_job(self, job_id: str) -> None:
        raise ExecutionError("Bulk API v2 is not supported by this endpoint")

    async def bulk_v2_job_state(self, job_id: str) -> Tuple[str, Optional[str]]:
        raise ExecutionError("Bulk API v2 is not supported by this endpoint")

    async def bulk_v2_job_results(self, job_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """Return ``successful``, ``failed`` and ``unprocessed`` result rows."""
        raise ExecutionError("Bulk API v2 is not supported by this endpoint")

    async def close(self) -> None:
        pass


def format_csv_value(value: Any) -> str:
    """Render a value the way bulk CSV payloads carry it; None becomes ``#N/A``."""
    if value is None:
        return "#N/A"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

"""Pydantic models for remote API responses."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiError(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status_code: Optional[str] = Field(default=None, alias="statusCode")
    message: str = ""
    fields: List[str] = Field(default_factory=list)


class SaveResult(BaseModel):
    """One entry of a composite sobjects or Bulk v1 result list."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    success: bool = False
    created: Optional[bool] = None
    errors: List[ApiError] = Field(default_factory=list)


class QueryResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    total_size: int = Field(default=0, alias="totalSize")
    done: bool = True
    records: List[Dict[str, Any]] = Field(default_factory=list)
    next_records_url: Optional[str] = Field(default=None, alias="nextRecordsUrl")


class BulkV1JobInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    state: str = ""
    object: Optional[str] = None
    operation: Optional[str] = None


class BulkV1BatchInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    job_id: Optional[str] = Field(default=None, alias="jobId")
    state: str = ""
    state_message: Optional[str] = Field(default=None, alias="stateMessage")


class BulkV2JobInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    state: str = ""
    object: Optional[str] = None
    operation: Optional[str] = None
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    number_records_processed: int = Field(default=0, alias="numberRecordsProcessed")
    number_records_failed: int = Field(default=0, alias="numberRecordsFailed")

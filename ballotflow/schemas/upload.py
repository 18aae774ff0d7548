"""Pydantic schemas for upload endpoints and the stored upload summary."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ballotflow.models.job import AttemptStatus, JobStatus, JobType
from ballotflow.schemas.payloads import InsertResultItem


class UploadTotals(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


class UploadStages(BaseModel):
    analyze: datetime | None = None
    structure: datetime | None = None
    insert: datetime | None = None


class UploadSummary(BaseModel):
    """Serialised into SpreadsheetUpload.summary_json."""

    model_config = ConfigDict(extra="allow")

    total_rows: int = 0
    batch_count: int = 0
    force_hidden: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    totals: UploadTotals = Field(default_factory=UploadTotals)
    stages: UploadStages = Field(default_factory=UploadStages)
    insert_results: list[InsertResultItem] = Field(default_factory=list)
    workbook_filename: str | None = None


class AttemptProgress(BaseModel):
    id: uuid.UUID
    model_used: str | None
    status: AttemptStatus
    is_fallback: bool
    started_at: datetime
    completed_at: datetime | None
    request_tokens: int | None
    response_tokens: int | None
    total_tokens: int | None
    error_message: str | None
    error_type: str | None

    model_config = {"from_attributes": True}


class JobProgress(BaseModel):
    id: uuid.UUID
    type: JobType
    status: JobStatus
    retry_count: int
    max_retries: int
    next_run_at: datetime
    last_error: str | None
    started_at: datetime | None
    completed_at: datetime | None
    attempts: list[AttemptProgress] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class BatchProgress(BaseModel):
    id: uuid.UUID
    label: str
    group_key: str
    municipality: str
    state: str
    position: str
    status: str
    error_reason: str | None
    row_count: int
    jobs: list[JobProgress] = Field(default_factory=list)


class UploadProgress(BaseModel):
    id: uuid.UUID
    status: str
    uploader_email: str
    original_filename: str
    force_hidden: bool
    queued_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    summary: UploadSummary | None
    batches: list[BatchProgress] = Field(default_factory=list)
    finalization_jobs: list[JobProgress] = Field(default_factory=list)


class UploadCreateRequest(BaseModel):
    rows: list[dict[str, Any]] = Field(..., description="Spreadsheet rows, one object per row")
    uploader_email: str
    original_filename: str = "upload.xlsx"
    force_hidden: bool = True


class UploadCreatedResponse(BaseModel):
    upload_id: uuid.UUID
    status: str
    batch_count: int
    summary: UploadSummary


class BatchActionRequest(BaseModel):
    action: Literal["retry", "skip", "refresh"]
    reason: str | None = None


class ErrorResponse(BaseModel):
    error: str
    detail: str

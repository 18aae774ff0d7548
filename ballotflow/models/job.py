"""PipelineJob and JobAttempt ORM models - the durable work queue."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ballotflow.db import Base, utcnow
from ballotflow.models.upload import JsonColumn

if TYPE_CHECKING:
    from ballotflow.models.upload import SpreadsheetUpload, UploadBatch


class JobType(enum.StrEnum):
    ANALYZE = "ANALYZE"
    STRUCTURE = "STRUCTURE"
    INSERT = "INSERT"
    WORKBOOK = "WORKBOOK"
    NOTIFICATION = "NOTIFICATION"


class JobStatus(enum.StrEnum):
    PENDING = "PENDING"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED})


class AttemptStatus(enum.StrEnum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class PipelineJob(Base):
    __tablename__ = "pipeline_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    upload_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("spreadsheet_uploads.id", ondelete="CASCADE"), nullable=True, index=True
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("upload_batches.id", ondelete="CASCADE"), nullable=True, index=True
    )
    type: Mapped[JobType] = mapped_column(Enum(JobType, native_enum=False, length=32), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, length=32), nullable=False, default=JobStatus.PENDING
    )
    dependency_job_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("pipeline_jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    preferred_models: Mapped[list[str]] = mapped_column(JsonColumn, nullable=False, default=list)
    fallback_models: Mapped[list[str]] = mapped_column(JsonColumn, nullable=False, default=list)
    estimated_request_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_response_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_run_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )

    upload: Mapped[SpreadsheetUpload | None] = relationship(
        "SpreadsheetUpload", back_populates="jobs"
    )
    batch: Mapped[UploadBatch | None] = relationship("UploadBatch", back_populates="jobs")
    attempts: Mapped[list[JobAttempt]] = relationship(
        "JobAttempt", back_populates="job", order_by="JobAttempt.started_at"
    )

    __table_args__ = (Index("idx_pipeline_jobs_dispatch", "status", "next_run_at"),)


class JobAttempt(Base):
    __tablename__ = "job_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("pipeline_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # NULL for jobs that run without an AI model (insert, workbook, notification).
    model_used: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[AttemptStatus] = mapped_column(
        Enum(AttemptStatus, native_enum=False, length=32),
        nullable=False,
        default=AttemptStatus.IN_PROGRESS,
    )
    is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rate_window_start: Mapped[datetime | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    request_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_type: Mapped[str | None] = mapped_column(Text, nullable=True)

    job: Mapped[PipelineJob] = relationship("PipelineJob", back_populates="attempts")

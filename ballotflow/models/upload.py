"""SpreadsheetUpload and UploadBatch ORM models."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, Enum, ForeignKey, Integer, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ballotflow.db import Base, utcnow

if TYPE_CHECKING:
    from ballotflow.models.job import PipelineJob

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class UploadStatus(enum.StrEnum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class BatchStatus(enum.StrEnum):
    QUEUED = "QUEUED"
    ANALYZING = "ANALYZING"
    STRUCTURING = "STRUCTURING"
    INSERTING = "INSERTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    NEEDS_REUPLOAD = "NEEDS_REUPLOAD"


ACTIVE_BATCH_STATUSES = frozenset(
    {BatchStatus.QUEUED, BatchStatus.ANALYZING, BatchStatus.STRUCTURING, BatchStatus.INSERTING}
)
ATTENTION_BATCH_STATUSES = frozenset({BatchStatus.FAILED, BatchStatus.NEEDS_REUPLOAD})


class SpreadsheetUpload(Base):
    __tablename__ = "spreadsheet_uploads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    uploader_email: Mapped[str] = mapped_column(Text, nullable=False)
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[UploadStatus] = mapped_column(
        Enum(UploadStatus, native_enum=False, length=32),
        nullable=False,
        default=UploadStatus.PROCESSING,
    )
    summary_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    force_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    queued_at: Mapped[datetime | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )

    batches: Mapped[list[UploadBatch]] = relationship(
        "UploadBatch", back_populates="upload", order_by="UploadBatch.sort_index"
    )
    jobs: Mapped[list[PipelineJob]] = relationship(
        "PipelineJob", back_populates="upload", order_by="PipelineJob.created_at"
    )


class UploadBatch(Base):
    __tablename__ = "upload_batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    upload_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("spreadsheet_uploads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sort_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    group_key: Mapped[str] = mapped_column(Text, nullable=False)
    municipality: Mapped[str] = mapped_column(Text, nullable=False, default="")
    state: Mapped[str] = mapped_column(Text, nullable=False, default="")
    position: Mapped[str] = mapped_column(Text, nullable=False, default="")
    raw_rows: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonColumn, nullable=True)
    # Either parsed JSON or the cleaned model text when it would not parse.
    analysis_json: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    structured_json: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, native_enum=False, length=32),
        nullable=False,
        default=BatchStatus.QUEUED,
    )
    error_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Plain references (no FK) to avoid a batch <-> job constraint cycle.
    analyze_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    structure_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    insert_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True, onupdate=func.now())

    upload: Mapped[SpreadsheetUpload] = relationship("SpreadsheetUpload", back_populates="batches")
    jobs: Mapped[list[PipelineJob]] = relationship(
        "PipelineJob", back_populates="batch", order_by="PipelineJob.created_at"
    )

    @property
    def label(self) -> str:
        parts = [p for p in (self.position, self.municipality, self.state) if p]
        return " - ".join(parts) if parts else str(self.id)

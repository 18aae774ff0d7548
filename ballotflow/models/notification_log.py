"""NotificationLog ORM model - one row per notice attempted for an upload."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ballotflow.db import Base, utcnow


class NotificationType(enum.StrEnum):
    QUEUED = "QUEUED"
    ANALYZE_COMPLETE = "ANALYZE_COMPLETE"
    STRUCTURE_COMPLETE = "STRUCTURE_COMPLETE"
    INSERT_COMPLETE = "INSERT_COMPLETE"
    BATCH_FAILED = "BATCH_FAILED"
    FINAL = "FINAL"


class NotificationStatus(enum.StrEnum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class NotificationLog(Base):
    __tablename__ = "upload_notification_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    upload_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("spreadsheet_uploads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, native_enum=False, length=32), nullable=False
    )
    # "" for upload-level notices; the batch id for per-batch failure notices.
    batch_key: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus, native_enum=False, length=32),
        nullable=False,
        default=NotificationStatus.QUEUED,
    )
    response_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, server_default=func.now()
    )
    # Refreshed whenever a sender takes the notice over; an old QUEUED claim is abandoned.
    claimed_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # The unique key is the dedup mechanism: claiming a notice means inserting its row.
    __table_args__ = (
        UniqueConstraint("upload_id", "type", "batch_key", name="uq_notification_upload_type_batch"),
    )

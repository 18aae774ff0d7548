"""Upload notifications, delivered at most once per (upload, type, batch).

A notice is claimed by inserting its NotificationLog row; the unique key on
(upload_id, type, batch_key) means concurrent or repeated syncs can only ever
claim, and therefore send, each notice once.
"""

import html
import logging
import uuid
from datetime import timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ballotflow.config import Settings
from ballotflow.db import utcnow
from ballotflow.models.notification_log import (
    NotificationLog,
    NotificationStatus,
    NotificationType,
)
from ballotflow.models.upload import ATTENTION_BATCH_STATUSES, BatchStatus, SpreadsheetUpload, UploadBatch
from ballotflow.schemas.upload import UploadSummary
from ballotflow.services.errors import MailDeliveryError
from ballotflow.services.mailer import MailAttachment, ResendMailer

logger = logging.getLogger(__name__)

_STAGE_NOTICES: list[tuple[str, NotificationType, str]] = [
    ("analyze", NotificationType.ANALYZE_COMPLETE, "analysis"),
    ("structure", NotificationType.STRUCTURE_COMPLETE, "structuring"),
    ("insert", NotificationType.INSERT_COMPLETE, "database insert"),
]

# (type, batch_key, batch or None for upload-level notices)
Notice = tuple[NotificationType, str, UploadBatch | None]


def _list_html(items: list[str]) -> str:
    if not items:
        return ""
    return "<ul>" + "".join(f"<li>{html.escape(item)}</li>" for item in items) + "</ul>"


def _page(title: str, body: str) -> str:
    return (
        "<!doctype html>\n<html>\n  <body style=\"font-family:Arial,Helvetica,sans-serif;\">\n"
        f"    <h2>{html.escape(title)}</h2>\n{body}\n  </body>\n</html>"
    )


class UploadNotifier:
    """Derives the notices an upload is due from its state and sends each once."""

    def __init__(self, mailer: ResendMailer, settings: Settings) -> None:
        self._mailer = mailer
        self._settings = settings

    def recipients(self, upload: SpreadsheetUpload) -> list[str]:
        candidates = [upload.uploader_email, self._settings.admin_email, self._settings.ops_email]
        seen: list[str] = []
        for email in candidates:
            if email and email not in seen:
                seen.append(email)
        return seen

    def due_notices(self, upload: SpreadsheetUpload) -> list[Notice]:
        summary = UploadSummary.model_validate(upload.summary_json or {})
        notices: list[Notice] = [(NotificationType.QUEUED, "", None)]
        for stage, notice_type, _ in _STAGE_NOTICES:
            if getattr(summary.stages, stage) is not None:
                notices.append((notice_type, "", None))
        for batch in upload.batches:
            if batch.status in ATTENTION_BATCH_STATUSES:
                notices.append((NotificationType.BATCH_FAILED, str(batch.id), batch))
        return notices

    def _claim(
        self, db: Session, upload_id: uuid.UUID, notice_type: NotificationType, batch_key: str, email: str
    ) -> NotificationLog | None:
        log = NotificationLog(
            upload_id=upload_id,
            type=notice_type,
            batch_key=batch_key,
            email=email,
            status=NotificationStatus.QUEUED,
        )
        db.add(log)
        try:
            db.commit()
        except IntegrityError:
            # Claimed by a concurrent sync.
            db.rollback()
            return None
        return log

    def _render(self, upload: SpreadsheetUpload, notice: Notice) -> tuple[str, str]:
        notice_type, _, batch = notice
        name = html.escape(upload.original_filename)
        link = f"{self._settings.public_app_url}/admin/upload-spreadsheet?upload={upload.id}"
        footer = f'    <p><a href="{html.escape(link)}">View upload progress</a></p>'
        if notice_type == NotificationType.QUEUED:
            summary = UploadSummary.model_validate(upload.summary_json or {})
            body = (
                f"    <p>Upload <strong>{name}</strong> was queued for processing.</p>\n"
                f"    <ul><li>Rows: {summary.total_rows}</li>"
                f"<li>Batches: {summary.batch_count}</li></ul>\n{footer}"
            )
            return f"Upload {upload.original_filename} queued", _page("Spreadsheet upload queued", body)
        if notice_type == NotificationType.BATCH_FAILED and batch is not None:
            reason = html.escape(batch.error_reason or "unknown error")
            state = "Needs reupload" if batch.status == BatchStatus.NEEDS_REUPLOAD else "Failed"
            body = (
                f"    <p>Batch <strong>{html.escape(batch.label)}</strong> of upload "
                f"<strong>{name}</strong> stopped ({state}).</p>\n"
                f"    <p>Reason: {reason}</p>\n"
                "    <p>Other batches keep processing. Retry or skip this batch once the "
                f"source data is fixed.</p>\n{footer}"
            )
            return f"Upload {upload.original_filename}: batch needs attention", _page(
                "Batch needs attention", body
            )
        label = next(label for _, t, label in _STAGE_NOTICES if t == notice_type)
        body = f"    <p>The {label} stage finished for every batch of <strong>{name}</strong>.</p>\n{footer}"
        return f"Upload {upload.original_filename}: {label} complete", _page(
            f"{label.capitalize()} complete", body
        )

    def sync(self, db: Session, upload_id: uuid.UUID) -> int:
        """Send every notice the upload is due that has not been claimed yet.

        Returns the number of messages sent. Failures are logged and recorded
        on the notice's log row, never raised.
        """
        try:
            upload = db.get(SpreadsheetUpload, upload_id, populate_existing=True)
            if upload is None:
                return 0
            claimed = {
                (row.type, row.batch_key)
                for row in db.execute(
                    select(NotificationLog.type, NotificationLog.batch_key).where(
                        NotificationLog.upload_id == upload_id
                    )
                )
            }
            recipients = self.recipients(upload)
            sent = 0
            for notice in self.due_notices(upload):
                notice_type, batch_key, _ = notice
                if (notice_type, batch_key) in claimed:
                    continue
                subject, body = self._render(upload, notice)
                log = self._claim(db, upload_id, notice_type, batch_key, ", ".join(recipients))
                if log is None:
                    continue
                try:
                    log.response_id = self._mailer.send(recipients, subject, body)
                except Exception as exc:
                    log.status = NotificationStatus.FAILED
                    log.error_message = str(exc)
                    db.commit()
                    logger.warning("upload %s: %s notice failed: %s", upload_id, notice_type, exc)
                    continue
                log.status = NotificationStatus.SENT
                log.sent_at = utcnow()
                db.commit()
                sent += 1
            return sent
        except Exception as exc:
            db.rollback()
            logger.error("upload %s: notification sync failed: %s", upload_id, exc)
            return 0

    def send_final(
        self, db: Session, upload: SpreadsheetUpload, *, filename: str, workbook_base64: str
    ) -> tuple[str, list[str]]:
        """Send the completion e-mail with the workbook attached; returns (message id, recipients).

        A FINAL notice that already went out is not sent again. A FAILED one, or a
        QUEUED one whose claim is older than the job timeout (its sender died),
        is re-claimed so a retried NOTIFICATION job can deliver it.

        Raises:
            MailDeliveryError: if delivery fails or another worker holds the notice.
        """
        recipients = self.recipients(upload)
        log = db.scalar(
            select(NotificationLog).where(
                NotificationLog.upload_id == upload.id,
                NotificationLog.type == NotificationType.FINAL,
                NotificationLog.batch_key == "",
            )
        )
        if log is not None and log.status == NotificationStatus.SENT:
            return log.response_id or "", recipients
        if log is not None:
            now = utcnow()
            abandoned_before = now - timedelta(seconds=self._settings.job_timeout_seconds)
            reclaimed = db.execute(
                update(NotificationLog)
                .where(
                    NotificationLog.id == log.id,
                    or_(
                        NotificationLog.status == NotificationStatus.FAILED,
                        and_(
                            NotificationLog.status == NotificationStatus.QUEUED,
                            NotificationLog.claimed_at < abandoned_before,
                        ),
                    ),
                )
                .values(status=NotificationStatus.QUEUED, error_message=None, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if reclaimed.rowcount != 1:
                raise MailDeliveryError(f"final notice for upload {upload.id} is already in flight")
            db.refresh(log)
        else:
            log = self._claim(db, upload.id, NotificationType.FINAL, "", ", ".join(recipients))
            if log is None:
                raise MailDeliveryError(f"final notice for upload {upload.id} is already in flight")

        subject, body = self._render_final(db, upload)
        try:
            message_id = self._mailer.send(
                recipients,
                subject,
                body,
                attachments=[MailAttachment(filename=filename, content_base64=workbook_base64)],
            )
        except Exception as exc:
            log.status = NotificationStatus.FAILED
            log.error_message = str(exc)
            db.commit()
            raise
        log.status = NotificationStatus.SENT
        log.response_id = message_id
        log.sent_at = utcnow()
        db.commit()
        return message_id, recipients

    def _render_final(self, db: Session, upload: SpreadsheetUpload) -> tuple[str, str]:
        db.refresh(upload)
        summary = UploadSummary.model_validate(upload.summary_json or {})
        batches = list(upload.batches)
        total = summary.totals.total or len(batches)
        completed = summary.totals.by_status.get(BatchStatus.COMPLETED.value, 0)
        attention = [b for b in batches if b.status in ATTENTION_BATCH_STATUSES]
        inserted = sum(len(item.candidate_slugs) for item in summary.insert_results)
        lines = [
            f"{b.label} ({'Needs reupload' if b.status == BatchStatus.NEEDS_REUPLOAD else 'Failed'})"
            for b in attention
        ]
        attention_html = ""
        if lines:
            attention_html = (
                "    <p><strong>Batches needing reupload or manual attention:</strong></p>"
                f"{_list_html(lines)}\n"
                "    <p>These batches were not inserted and need to be retried once the source "
                "data is fixed.</p>\n"
            )
        body = (
            f"    <p>Upload <strong>{upload.id}</strong> has finished processing.</p>\n"
            "    <ul>\n"
            f"      <li>Total batches: {total}</li>\n"
            f"      <li>Completed batches: {completed}</li>\n"
            f"      <li>Batches needing reupload: {len(attention)}</li>\n"
            f"      <li>Candidates inserted: {inserted}</li>\n"
            f"      <li>Hidden by default: {'Yes' if upload.force_hidden else 'No'}</li>\n"
            "    </ul>\n"
            f"{attention_html}"
            "    <p>The generated workbook is attached for your records.</p>"
        )
        return f"Ballotflow upload {upload.id} completed", _page("Spreadsheet upload completed", body)

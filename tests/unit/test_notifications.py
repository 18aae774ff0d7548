"""Unit tests for deduplicated upload notifications."""

import uuid
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from ballotflow.config import Settings
from ballotflow.db import utcnow
from ballotflow.models.job import JobType, PipelineJob
from ballotflow.models.notification_log import NotificationLog, NotificationStatus, NotificationType
from ballotflow.models.upload import SpreadsheetUpload
from ballotflow.schemas.jobs import AnalyzeResult
from ballotflow.services.errors import MailDeliveryError
from ballotflow.services.notifications import UploadNotifier
from ballotflow.services.queue import claim_job, create_spreadsheet_upload, record_failure, record_success

NOW = datetime(2026, 3, 2, 10, 0, 0)
ROWS = [
    {"municipality": "Austin", "state": "TX", "position": "Clerk", "firstName": "Bo", "lastName": "Diaz"},
    {"municipality": "Dallas", "state": "TX", "position": "Mayor", "firstName": "Al", "lastName": "Kim"},
]


def _upload(db: Session, settings: Settings, notifier: UploadNotifier | None = None) -> SpreadsheetUpload:
    return create_spreadsheet_upload(
        db,
        settings,
        rows=ROWS,
        uploader_email="clerk@example.org",
        original_filename="ballots.xlsx",
        notifier=notifier,
    )


def _logs(db: Session, upload_id) -> list[NotificationLog]:
    return list(
        db.scalars(
            select(NotificationLog)
            .where(NotificationLog.upload_id == upload_id)
            .execution_options(populate_existing=True)
        )
    )


def _analyze_jobs(db: Session, upload_id) -> list[PipelineJob]:
    return list(
        db.scalars(
            select(PipelineJob).where(
                PipelineJob.upload_id == upload_id, PipelineJob.type == JobType.ANALYZE
            )
        )
    )


class TestRecipients:
    def test_deduplicates_in_order(self, settings: Settings, mock_mailer: MagicMock) -> None:
        upload = SpreadsheetUpload(uploader_email="admin@example.org")
        notifier = UploadNotifier(mock_mailer, settings)
        assert notifier.recipients(upload) == ["admin@example.org", "ops@example.org"]

    def test_skips_unset_admin(self, settings: Settings, mock_mailer: MagicMock) -> None:
        settings.admin_email = ""
        upload = SpreadsheetUpload(uploader_email="clerk@example.org")
        notifier = UploadNotifier(mock_mailer, settings)
        assert notifier.recipients(upload) == ["clerk@example.org", "ops@example.org"]


class TestSync:
    def test_queued_notice_is_sent_once(self, db: Session, settings: Settings, mock_mailer: MagicMock) -> None:
        notifier = UploadNotifier(mock_mailer, settings)
        upload = _upload(db, settings, notifier)

        assert notifier.sync(db, upload.id) == 0

        mock_mailer.send.assert_called_once()
        to, subject, _ = mock_mailer.send.call_args.args
        assert to == ["clerk@example.org", "admin@example.org", "ops@example.org"]
        assert "queued" in subject
        logs = _logs(db, upload.id)
        assert [(log.type, log.status, log.response_id) for log in logs] == [
            (NotificationType.QUEUED, NotificationStatus.SENT, "msg-1")
        ]

    def test_stage_notice_follows_stage_stamp(self, db: Session, settings: Settings, mock_mailer: MagicMock) -> None:
        notifier = UploadNotifier(mock_mailer, settings)
        upload = _upload(db, settings, notifier)

        for job in _analyze_jobs(db, upload.id):
            attempt = claim_job(db, job.id, model="m1", now=NOW)
            record_success(db, job.id, attempt.id, AnalyzeResult(text="[]"), notifier=notifier, now=NOW)
        notifier.sync(db, upload.id)

        types = [log.type for log in _logs(db, upload.id)]
        assert types.count(NotificationType.ANALYZE_COMPLETE) == 1
        assert NotificationType.STRUCTURE_COMPLETE not in types

    def test_failed_batch_notice_per_batch(self, db: Session, settings: Settings, mock_mailer: MagicMock) -> None:
        notifier = UploadNotifier(mock_mailer, settings)
        upload = _upload(db, settings, notifier)
        job = _analyze_jobs(db, upload.id)[0]

        attempt = claim_job(db, job.id, model="m1", now=NOW)
        record_failure(db, job.id, attempt.id, "HTTP 400", retryable=False, notifier=notifier, now=NOW)
        notifier.sync(db, upload.id)

        failed = [log for log in _logs(db, upload.id) if log.type == NotificationType.BATCH_FAILED]
        assert len(failed) == 1
        assert failed[0].batch_key == str(job.batch_id)
        assert mock_mailer.send.call_count == 2

    def test_delivery_failure_is_recorded_not_raised(
        self, db: Session, settings: Settings, mock_mailer: MagicMock
    ) -> None:
        mock_mailer.send.side_effect = MailDeliveryError("Resend send failed: 500")
        notifier = UploadNotifier(mock_mailer, settings)
        upload = _upload(db, settings)

        assert notifier.sync(db, upload.id) == 0
        assert notifier.sync(db, upload.id) == 0

        mock_mailer.send.assert_called_once()
        log = _logs(db, upload.id)[0]
        assert log.status == NotificationStatus.FAILED
        assert "500" in log.error_message

    def test_unexpected_send_error_is_recorded_not_raised(
        self, db: Session, settings: Settings, mock_mailer: MagicMock
    ) -> None:
        mock_mailer.send.side_effect = RuntimeError("socket closed")
        upload = _upload(db, settings)

        assert UploadNotifier(mock_mailer, settings).sync(db, upload.id) == 0

        log = _logs(db, upload.id)[0]
        assert log.status == NotificationStatus.FAILED
        assert log.error_message == "socket closed"

    def test_missing_upload_sends_nothing(self, db: Session, settings: Settings, mock_mailer: MagicMock) -> None:
        assert UploadNotifier(mock_mailer, settings).sync(db, uuid.uuid4()) == 0
        mock_mailer.send.assert_not_called()


class TestSendFinal:
    def test_sends_with_attachment_once(self, db: Session, settings: Settings, mock_mailer: MagicMock) -> None:
        notifier = UploadNotifier(mock_mailer, settings)
        upload = _upload(db, settings)

        first = notifier.send_final(db, upload, filename="out.xlsx", workbook_base64="UEsD")
        second = notifier.send_final(db, upload, filename="out.xlsx", workbook_base64="UEsD")

        assert first == second
        assert first[0] == "msg-1"
        mock_mailer.send.assert_called_once()
        call = mock_mailer.send.call_args
        assert call.kwargs["attachments"][0].filename == "out.xlsx"
        assert "Spreadsheet upload completed" in call.args[2]
        assert "Batches needing reupload: 0" in call.args[2]

    def test_failed_final_notice_can_be_retried(
        self, db: Session, settings: Settings, mock_mailer: MagicMock
    ) -> None:
        mock_mailer.send.side_effect = [MailDeliveryError("timeout"), "msg-2"]
        notifier = UploadNotifier(mock_mailer, settings)
        upload = _upload(db, settings)

        with pytest.raises(MailDeliveryError):
            notifier.send_final(db, upload, filename="out.xlsx", workbook_base64="UEsD")
        message_id, _ = notifier.send_final(db, upload, filename="out.xlsx", workbook_base64="UEsD")

        assert message_id == "msg-2"
        final = [log for log in _logs(db, upload.id) if log.type == NotificationType.FINAL]
        assert len(final) == 1
        assert final[0].status == NotificationStatus.SENT

    def test_in_flight_final_notice_is_not_resent(
        self, db: Session, settings: Settings, mock_mailer: MagicMock
    ) -> None:
        upload = _upload(db, settings)
        db.add(NotificationLog(upload_id=upload.id, type=NotificationType.FINAL, batch_key=""))
        db.commit()

        with pytest.raises(MailDeliveryError):
            UploadNotifier(mock_mailer, settings).send_final(
                db, upload, filename="out.xlsx", workbook_base64="UEsD"
            )
        mock_mailer.send.assert_not_called()

    def test_abandoned_final_claim_is_taken_over(
        self, db: Session, settings: Settings, mock_mailer: MagicMock
    ) -> None:
        upload = _upload(db, settings)
        stale = utcnow() - timedelta(seconds=settings.job_timeout_seconds + 60)
        db.add(
            NotificationLog(
                upload_id=upload.id, type=NotificationType.FINAL, batch_key="", claimed_at=stale
            )
        )
        db.commit()

        message_id, _ = UploadNotifier(mock_mailer, settings).send_final(
            db, upload, filename="out.xlsx", workbook_base64="UEsD"
        )

        assert message_id == "msg-1"
        mock_mailer.send.assert_called_once()
        final = [log for log in _logs(db, upload.id) if log.type == NotificationType.FINAL]
        assert len(final) == 1
        assert final[0].status == NotificationStatus.SENT
        assert final[0].claimed_at > stale

    def test_unexpected_send_error_marks_final_notice_failed(
        self, db: Session, settings: Settings, mock_mailer: MagicMock
    ) -> None:
        mock_mailer.send.side_effect = [RuntimeError("socket closed"), "msg-2"]
        notifier = UploadNotifier(mock_mailer, settings)
        upload = _upload(db, settings)

        with pytest.raises(RuntimeError):
            notifier.send_final(db, upload, filename="out.xlsx", workbook_base64="UEsD")
        final = [log for log in _logs(db, upload.id) if log.type == NotificationType.FINAL]
        assert final[0].status == NotificationStatus.FAILED

        message_id, _ = notifier.send_final(db, upload, filename="out.xlsx", workbook_base64="UEsD")
        assert message_id == "msg-2"

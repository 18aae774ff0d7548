"""Durable job queue for spreadsheet uploads.

Every public mutating function commits its own transaction and, when given an
``UploadNotifier``, syncs the upload's notifications after the commit. Claims
and attempt finalisation are conditional UPDATEs, so concurrent workers can
never both run or both finish the same job.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ballotflow.config import Settings
from ballotflow.db import utcnow
from ballotflow.models.job import (
    TERMINAL_JOB_STATUSES,
    AttemptStatus,
    JobAttempt,
    JobStatus,
    JobType,
    PipelineJob,
)
from ballotflow.models.upload import (
    ACTIVE_BATCH_STATUSES,
    ATTENTION_BATCH_STATUSES,
    BatchStatus,
    SpreadsheetUpload,
    UploadBatch,
    UploadStatus,
)
from ballotflow.schemas.jobs import (
    AnalyzeResult,
    InsertResult,
    JobResult,
    NotificationResult,
    StructureResult,
    WorkbookResult,
    result_usage,
)
from ballotflow.schemas.upload import (
    BatchProgress,
    JobProgress,
    UploadProgress,
    UploadSummary,
    UploadTotals,
)
from ballotflow.services.errors import (
    BatchActionError,
    InvalidUploadError,
    JobNotReady,
    NotFoundError,
    StaleAttemptError,
)
from ballotflow.services.grouping import group_rows
from ballotflow.services.json_repair import parse_model_output
from ballotflow.services.rate_limit import compute_backoff_delay

if TYPE_CHECKING:
    from ballotflow.services.notifications import UploadNotifier

logger = logging.getLogger(__name__)

JOB_PRIORITIES: dict[JobType, int] = {
    JobType.ANALYZE: 100,
    JobType.STRUCTURE: 90,
    JobType.INSERT: 80,
    JobType.WORKBOOK: 70,
    JobType.NOTIFICATION: 60,
}

ANALYZE_RESPONSE_FACTOR = 1.1
STRUCTURE_RESPONSE_FACTOR = 1.2

_START_STATUS: dict[JobType, BatchStatus] = {
    JobType.ANALYZE: BatchStatus.ANALYZING,
    JobType.STRUCTURE: BatchStatus.STRUCTURING,
    JobType.INSERT: BatchStatus.INSERTING,
}

# Batch statuses that count as having passed each stage.
_STAGE_PASSED: dict[str, frozenset[BatchStatus]] = {
    "analyze": frozenset({BatchStatus.STRUCTURING, BatchStatus.INSERTING, BatchStatus.COMPLETED}),
    "structure": frozenset({BatchStatus.INSERTING, BatchStatus.COMPLETED}),
    "insert": frozenset({BatchStatus.COMPLETED}),
}


def _notify(notifier: UploadNotifier | None, db: Session, upload_id: uuid.UUID | None) -> None:
    if notifier is not None and upload_id is not None:
        notifier.sync(db, upload_id)


# ── Upload creation ──────────────────────────────────────────────────────────


def create_spreadsheet_upload(
    db: Session,
    settings: Settings,
    *,
    rows: Sequence[Mapping[str, Any]],
    uploader_email: str,
    original_filename: str,
    force_hidden: bool = True,
    summary: Mapping[str, Any] | None = None,
    notifier: UploadNotifier | None = None,
) -> SpreadsheetUpload:
    """Group *rows* into batches and queue ANALYZE -> STRUCTURE -> INSERT for each.

    The upload, its batches and all their jobs are written in one transaction.
    Raises InvalidUploadError for an empty spreadsheet.
    """
    if not rows:
        raise InvalidUploadError("Spreadsheet upload requires at least one row")
    groups = group_rows(rows)
    if not groups:
        raise InvalidUploadError("No election batches detected from spreadsheet rows")

    now = utcnow()
    upload_summary = UploadSummary.model_validate(
        {
            **(summary or {}),
            "total_rows": len(rows),
            "batch_count": len(groups),
            "force_hidden": force_hidden,
            "created_at": now,
            "updated_at": now,
            "totals": UploadTotals(
                total=len(groups), by_status={BatchStatus.QUEUED.value: len(groups)}
            ),
        }
    )
    upload = SpreadsheetUpload(
        uploader_email=uploader_email,
        original_filename=original_filename,
        status=UploadStatus.PROCESSING,
        force_hidden=force_hidden,
        queued_at=now,
        started_at=now,
        summary_json=upload_summary.model_dump(mode="json"),
    )
    db.add(upload)
    db.flush()

    for index, group in enumerate(groups):
        batch = UploadBatch(
            upload_id=upload.id,
            sort_index=index,
            group_key=group["key"],
            municipality=group["municipality"],
            state=group["state"],
            position=group["position"],
            raw_rows=group["rows"],
            status=BatchStatus.QUEUED,
        )
        db.add(batch)
        db.flush()

        analyze_tokens = group["estimated_analyze_tokens"]
        structure_tokens = group["estimated_structure_tokens"]
        analyze = PipelineJob(
            id=uuid.uuid4(),
            upload_id=upload.id,
            batch_id=batch.id,
            type=JobType.ANALYZE,
            status=JobStatus.READY,
            priority=JOB_PRIORITIES[JobType.ANALYZE],
            preferred_models=list(settings.analyze_models),
            fallback_models=list(settings.analyze_fallback_models),
            estimated_request_tokens=analyze_tokens,
            estimated_response_tokens=math.ceil(analyze_tokens * ANALYZE_RESPONSE_FACTOR),
            max_retries=settings.job_max_retries,
            next_run_at=now,
            metadata_json={"stage": "analyze", "group_key": group["key"]},
        )
        structure = PipelineJob(
            id=uuid.uuid4(),
            upload_id=upload.id,
            batch_id=batch.id,
            type=JobType.STRUCTURE,
            status=JobStatus.PENDING,
            dependency_job_id=analyze.id,
            priority=JOB_PRIORITIES[JobType.STRUCTURE],
            preferred_models=list(settings.structure_models),
            fallback_models=list(settings.structure_fallback_models),
            estimated_request_tokens=structure_tokens,
            estimated_response_tokens=math.ceil(structure_tokens * STRUCTURE_RESPONSE_FACTOR),
            max_retries=settings.job_max_retries,
            next_run_at=now,
            metadata_json={"stage": "structure", "group_key": group["key"]},
        )
        # INSERT only touches the database, so it carries no model candidates.
        insert_job = PipelineJob(
            id=uuid.uuid4(),
            upload_id=upload.id,
            batch_id=batch.id,
            type=JobType.INSERT,
            status=JobStatus.PENDING,
            dependency_job_id=structure.id,
            priority=JOB_PRIORITIES[JobType.INSERT],
            preferred_models=[],
            fallback_models=[],
            max_retries=settings.job_max_retries,
            next_run_at=now,
            metadata_json={
                "stage": "insert",
                "group_key": group["key"],
                "force_hidden": force_hidden,
            },
        )
        db.add_all([analyze, structure, insert_job])
        batch.analyze_job_id = analyze.id
        batch.structure_job_id = structure.id
        batch.insert_job_id = insert_job.id

    db.commit()
    logger.info(
        "queued upload %s (%s): %d rows in %d batches",
        upload.id,
        original_filename,
        len(rows),
        len(groups),
    )
    _notify(notifier, db, upload.id)
    return upload


# ── Dispatch ─────────────────────────────────────────────────────────────────


def list_dispatchable(db: Session, limit: int, now: datetime | None = None) -> list[PipelineJob]:
    """READY jobs whose next run time has come, highest priority first."""
    now = now or utcnow()
    stmt = (
        select(PipelineJob)
        .where(PipelineJob.status == JobStatus.READY, PipelineJob.next_run_at <= now)
        .order_by(
            PipelineJob.priority.desc(),
            PipelineJob.next_run_at.asc(),
            PipelineJob.created_at.asc(),
        )
        .limit(limit)
    )
    return list(db.scalars(stmt).all())


def claim_job(
    db: Session,
    job_id: uuid.UUID,
    *,
    model: str | None,
    is_fallback: bool = False,
    window_start: datetime | None = None,
    now: datetime | None = None,
) -> JobAttempt:
    """Move a READY job to IN_PROGRESS and open an attempt for it.

    Raises JobNotReady when another worker claimed the job first or it left
    READY for any other reason.
    """
    now = now or utcnow()
    result = db.execute(
        update(PipelineJob)
        .where(PipelineJob.id == job_id, PipelineJob.status == JobStatus.READY)
        .values(status=JobStatus.IN_PROGRESS, started_at=now, completed_at=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise JobNotReady(f"Job {job_id} is not ready")

    job = db.get(PipelineJob, job_id, populate_existing=True)
    assert job is not None
    attempt = JobAttempt(
        job_id=job_id,
        model_used=model,
        status=AttemptStatus.IN_PROGRESS,
        is_fallback=is_fallback,
        rate_window_start=window_start,
        started_at=now,
    )
    db.add(attempt)
    if job.batch_id is not None and job.type in _START_STATUS:
        batch = db.get(UploadBatch, job.batch_id)
        if batch is not None:
            batch.status = _START_STATUS[job.type]
            batch.error_reason = None
    if job.upload_id is not None:
        refresh_upload_summary(db, job.upload_id, now)
    db.commit()
    return attempt


def _finalize_attempt(
    db: Session, attempt_id: uuid.UUID, status: AttemptStatus, now: datetime, **fields: Any
) -> bool:
    """Close an attempt exactly once; False when it was already closed."""
    result = db.execute(
        update(JobAttempt)
        .where(JobAttempt.id == attempt_id, JobAttempt.status == AttemptStatus.IN_PROGRESS)
        .values(status=status, completed_at=now, **fields)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _get_job(db: Session, job_id: uuid.UUID) -> PipelineJob:
    job = db.get(PipelineJob, job_id, with_for_update=True, populate_existing=True)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return job


# ── Success ──────────────────────────────────────────────────────────────────


def _batch_for(db: Session, job: PipelineJob) -> UploadBatch | None:
    return db.get(UploadBatch, job.batch_id) if job.batch_id is not None else None


def _apply_analyze(db: Session, job: PipelineJob, attempt: JobAttempt, result: JobResult) -> None:
    assert isinstance(result, AnalyzeResult)
    parsed = parse_model_output(result.text)
    attempt.response_body = parsed
    batch = _batch_for(db, job)
    if batch is not None:
        batch.analysis_json = parsed
        batch.status = BatchStatus.STRUCTURING
        batch.error_reason = None


def _apply_structure(db: Session, job: PipelineJob, attempt: JobAttempt, result: JobResult) -> None:
    assert isinstance(result, StructureResult)
    parsed = parse_model_output(result.text)
    attempt.response_body = parsed
    batch = _batch_for(db, job)
    if batch is not None:
        batch.structured_json = parsed
        batch.status = BatchStatus.INSERTING
        batch.error_reason = None


def _apply_insert(db: Session, job: PipelineJob, attempt: JobAttempt, result: JobResult) -> None:
    assert isinstance(result, InsertResult)
    attempt.response_body = result.model_dump(mode="json", exclude={"kind"})
    batch = _batch_for(db, job)
    if batch is not None:
        batch.status = BatchStatus.COMPLETED
        batch.error_reason = None
    if job.upload_id is not None and result.results:
        upload = db.get(SpreadsheetUpload, job.upload_id)
        if upload is not None:
            summary = UploadSummary.model_validate(upload.summary_json or {})
            summary.insert_results = [*summary.insert_results, *result.results]
            upload.summary_json = summary.model_dump(mode="json")


def _apply_workbook(db: Session, job: PipelineJob, attempt: JobAttempt, result: JobResult) -> None:
    assert isinstance(result, WorkbookResult)
    attempt.response_body = {"workbook_base64": result.workbook_base64, "filename": result.filename}
    if job.upload_id is not None:
        upload = db.get(SpreadsheetUpload, job.upload_id)
        if upload is not None:
            summary = UploadSummary.model_validate(upload.summary_json or {})
            summary.workbook_filename = result.filename
            upload.summary_json = summary.model_dump(mode="json")


def _apply_notification(
    db: Session, job: PipelineJob, attempt: JobAttempt, result: JobResult
) -> None:
    assert isinstance(result, NotificationResult)
    attempt.response_body = {"message_id": result.message_id, "recipients": result.recipients}
    if job.upload_id is not None:
        # The workbook has been built and delivered; the source rows are no longer needed.
        for batch in db.scalars(select(UploadBatch).where(UploadBatch.upload_id == job.upload_id)):
            batch.raw_rows = None


_APPLIERS: dict[JobType, Callable[[Session, PipelineJob, JobAttempt, JobResult], None]] = {
    JobType.ANALYZE: _apply_analyze,
    JobType.STRUCTURE: _apply_structure,
    JobType.INSERT: _apply_insert,
    JobType.WORKBOOK: _apply_workbook,
    JobType.NOTIFICATION: _apply_notification,
}


def record_success(
    db: Session,
    job_id: uuid.UUID,
    attempt_id: uuid.UUID,
    result: JobResult,
    *,
    notifier: UploadNotifier | None = None,
    now: datetime | None = None,
) -> PipelineJob:
    """Store a handler's result, complete the job and unlock what depends on it.

    Raises StaleAttemptError when the attempt was already closed (timed out,
    superseded by a batch retry); the late result is discarded.
    """
    now = now or utcnow()
    job = _get_job(db, job_id)
    usage = result_usage(result)
    if job.status != JobStatus.IN_PROGRESS or not _finalize_attempt(
        db,
        attempt_id,
        AttemptStatus.SUCCEEDED,
        now,
        request_tokens=usage.request_tokens,
        response_tokens=usage.response_tokens,
        total_tokens=usage.total_tokens,
        status_code=usage.status_code,
    ):
        db.rollback()
        raise StaleAttemptError(f"Attempt {attempt_id} of job {job_id} is no longer live")

    attempt = db.get(JobAttempt, attempt_id, populate_existing=True)
    assert attempt is not None
    _APPLIERS[job.type](db, job, attempt, result)

    job.status = JobStatus.SUCCEEDED
    job.completed_at = now
    job.last_error = None
    unlock_dependent_jobs(db, job.id, now)
    if job.upload_id is not None:
        refresh_upload_summary(db, job.upload_id, now)
        _enqueue_finalization(db, job.upload_id, now)
    db.commit()
    logger.info("job %s (%s) succeeded", job.id, job.type)
    _notify(notifier, db, job.upload_id)
    return job


def unlock_dependent_jobs(db: Session, job_id: uuid.UUID, now: datetime | None = None) -> int:
    """Make PENDING dependents of *job_id* READY. Runs inside the caller's transaction."""
    result = db.execute(
        update(PipelineJob)
        .where(PipelineJob.dependency_job_id == job_id, PipelineJob.status == JobStatus.PENDING)
        .values(status=JobStatus.READY, next_run_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ── Failure and rescheduling ─────────────────────────────────────────────────


def _apply_failure(
    db: Session,
    job: PipelineJob,
    message: str,
    *,
    retryable: bool,
    now: datetime,
    base_delay: float,
    retry_after: float | None = None,
) -> bool:
    """Count a failed attempt against *job*. Returns True when the job is now FAILED."""
    job.retry_count += 1
    job.last_error = message
    if retryable and job.retry_count < job.max_retries:
        job.status = JobStatus.READY
        if retry_after:
            job.next_run_at = now + timedelta(seconds=retry_after)
        else:
            job.next_run_at = now + compute_backoff_delay(job.retry_count, base_delay)
        return False

    job.status = JobStatus.FAILED
    job.completed_at = now
    job.next_run_at = now
    batch = _batch_for(db, job)
    if batch is not None:
        batch.status = BatchStatus.NEEDS_REUPLOAD
        batch.error_reason = message
    logger.warning("job %s (%s) failed permanently: %s", job.id, job.type, message)
    return True


def record_failure(
    db: Session,
    job_id: uuid.UUID,
    attempt_id: uuid.UUID,
    message: str,
    *,
    retryable: bool = True,
    error_type: str | None = None,
    status_code: int | None = None,
    retry_after: float | None = None,
    base_delay: float = 30.0,
    notifier: UploadNotifier | None = None,
    now: datetime | None = None,
) -> PipelineJob:
    """Close the attempt as failed and either reschedule the job or fail its batch."""
    now = now or utcnow()
    job = _get_job(db, job_id)
    if job.status != JobStatus.IN_PROGRESS or not _finalize_attempt(
        db,
        attempt_id,
        AttemptStatus.FAILED,
        now,
        error_message=message,
        error_type=error_type,
        status_code=status_code,
    ):
        db.rollback()
        raise StaleAttemptError(f"Attempt {attempt_id} of job {job_id} is no longer live")

    _apply_failure(
        db,
        job,
        message,
        retryable=retryable,
        now=now,
        base_delay=base_delay,
        retry_after=retry_after,
    )
    if job.upload_id is not None:
        refresh_upload_summary(db, job.upload_id, now)
        _enqueue_finalization(db, job.upload_id, now)
    db.commit()
    _notify(notifier, db, job.upload_id)
    return job


def schedule_retry(db: Session, job_id: uuid.UUID, retry_at: datetime, reason: str) -> bool:
    """Push a rate-limited job's next run time out. Only touches jobs still READY."""
    result = db.execute(
        update(PipelineJob)
        .where(PipelineJob.id == job_id, PipelineJob.status == JobStatus.READY)
        .values(next_run_at=retry_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info("job %s rate limited (%s); next run at %s", job_id, reason, retry_at)
    return result.rowcount == 1


def _supersede_live_attempts(
    db: Session, job_id: uuid.UUID, now: datetime, message: str, error_type: str
) -> None:
    db.execute(
        update(JobAttempt)
        .where(JobAttempt.job_id == job_id, JobAttempt.status == AttemptStatus.IN_PROGRESS)
        .values(
            status=AttemptStatus.FAILED,
            completed_at=now,
            error_message=message,
            error_type=error_type,
        )
        .execution_options(synchronize_session=False)
    )


def reset_stale_jobs(
    db: Session,
    max_duration: timedelta,
    *,
    base_delay: float = 30.0,
    notifier: UploadNotifier | None = None,
    now: datetime | None = None,
) -> int:
    """Reclaim IN_PROGRESS jobs whose worker has been gone longer than *max_duration*.

    The live attempt is failed with error type ``timeout`` and the job follows
    the normal retry/exhaustion policy. Returns the number of jobs reset.
    """
    now = now or utcnow()
    cutoff = now - max_duration
    stale_ids = list(
        db.scalars(
            select(PipelineJob.id).where(
                PipelineJob.status == JobStatus.IN_PROGRESS, PipelineJob.started_at < cutoff
            )
        )
    )
    message = f"Job timed out after {int(max_duration.total_seconds())}s without completion"
    reset = 0
    for job_id in stale_ids:
        job = _get_job(db, job_id)
        if job.status != JobStatus.IN_PROGRESS:
            db.rollback()
            continue
        _supersede_live_attempts(db, job.id, now, message, "timeout")
        _apply_failure(db, job, message, retryable=True, now=now, base_delay=base_delay)
        if job.upload_id is not None:
            refresh_upload_summary(db, job.upload_id, now)
            _enqueue_finalization(db, job.upload_id, now)
        db.commit()
        reset += 1
        logger.warning("reset stale job %s (%s)", job.id, job.type)
        _notify(notifier, db, job.upload_id)
    return reset


# ── Summary and finalization ─────────────────────────────────────────────────


def refresh_upload_summary(
    db: Session, upload_id: uuid.UUID, now: datetime | None = None
) -> SpreadsheetUpload | None:
    """Recompute the upload's status, counters and stage stamps from its batches.

    Runs inside the caller's transaction.
    """
    now = now or utcnow()
    upload = db.get(SpreadsheetUpload, upload_id, with_for_update=True)
    if upload is None:
        return None
    db.flush()
    batches = list(db.scalars(select(UploadBatch).where(UploadBatch.upload_id == upload_id)))
    counts = Counter(batch.status.value for batch in batches)

    summary = UploadSummary.model_validate(upload.summary_json or {})
    summary.totals = UploadTotals(total=len(batches), by_status=dict(counts))
    summary.updated_at = now
    for stage, passed in _STAGE_PASSED.items():
        if getattr(summary.stages, stage) is not None or not batches:
            continue
        statuses = [batch.status for batch in batches]
        if all(s in passed or s in ATTENTION_BATCH_STATUSES for s in statuses) and any(
            s in passed for s in statuses
        ):
            setattr(summary.stages, stage, now)

    if any(batch.status in ATTENTION_BATCH_STATUSES for batch in batches):
        status = UploadStatus.FAILED
    elif batches and all(batch.status == BatchStatus.COMPLETED for batch in batches):
        status = UploadStatus.COMPLETED
    else:
        status = UploadStatus.PROCESSING

    if status == UploadStatus.COMPLETED and upload.status != UploadStatus.COMPLETED:
        upload.completed_at = now
        for batch in batches:
            batch.analysis_json = None
            batch.structured_json = None
    upload.status = status
    upload.summary_json = summary.model_dump(mode="json")
    return upload


def _enqueue_finalization(db: Session, upload_id: uuid.UUID, now: datetime) -> bool:
    db.flush()
    active = db.scalar(
        select(UploadBatch.id)
        .where(
            UploadBatch.upload_id == upload_id,
            UploadBatch.status.in_(list(ACTIVE_BATCH_STATUSES)),
        )
        .limit(1)
    )
    if active is not None:
        return False
    existing = db.scalar(
        select(PipelineJob.id)
        .where(PipelineJob.upload_id == upload_id, PipelineJob.type == JobType.WORKBOOK)
        .limit(1)
    )
    if existing is not None:
        return False

    workbook = PipelineJob(
        id=uuid.uuid4(),
        upload_id=upload_id,
        type=JobType.WORKBOOK,
        status=JobStatus.READY,
        priority=JOB_PRIORITIES[JobType.WORKBOOK],
        preferred_models=[],
        fallback_models=[],
        next_run_at=now,
        metadata_json={"stage": "workbook"},
    )
    notification = PipelineJob(
        id=uuid.uuid4(),
        upload_id=upload_id,
        type=JobType.NOTIFICATION,
        status=JobStatus.PENDING,
        dependency_job_id=workbook.id,
        priority=JOB_PRIORITIES[JobType.NOTIFICATION],
        preferred_models=[],
        fallback_models=[],
        next_run_at=now,
        metadata_json={"stage": "notification"},
    )
    db.add_all([workbook, notification])
    logger.info("upload %s: every batch settled, queued workbook and notification", upload_id)
    return True


def maybe_enqueue_finalization_jobs(
    db: Session, upload_id: uuid.UUID, now: datetime | None = None
) -> bool:
    """Queue WORKBOOK -> NOTIFICATION once no batch is still in flight.

    Idempotent: an upload is finalized at most once.
    """
    created = _enqueue_finalization(db, upload_id, now or utcnow())
    db.commit()
    return created


# ── Operator actions ─────────────────────────────────────────────────────────


def _get_batch(db: Session, upload_id: uuid.UUID, batch_id: uuid.UUID) -> UploadBatch:
    batch = db.get(UploadBatch, batch_id, populate_existing=True)
    if batch is None or batch.upload_id != upload_id:
        raise NotFoundError(f"Batch {batch_id} not found in upload {upload_id}")
    return batch


def _batch_jobs(db: Session, batch_id: uuid.UUID) -> list[PipelineJob]:
    return list(
        db.scalars(
            select(PipelineJob)
            .where(PipelineJob.batch_id == batch_id)
            .order_by(PipelineJob.priority.desc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    )


def retry_batch(
    db: Session,
    upload_id: uuid.UUID,
    batch_id: uuid.UUID,
    *,
    notifier: UploadNotifier | None = None,
    now: datetime | None = None,
) -> UploadBatch:
    """Restart a batch from ANALYZE with a fresh retry budget."""
    now = now or utcnow()
    batch = _get_batch(db, upload_id, batch_id)
    if batch.status == BatchStatus.COMPLETED:
        raise BatchActionError(f"Batch {batch_id} already completed")
    if not batch.raw_rows:
        raise BatchActionError(
            f"Batch {batch_id} no longer has its source rows; upload the spreadsheet again"
        )

    for job in _batch_jobs(db, batch.id):
        _supersede_live_attempts(db, job.id, now, "Superseded by batch retry", "superseded")
        job.status = JobStatus.READY if job.type == JobType.ANALYZE else JobStatus.PENDING
        job.retry_count = 0
        job.next_run_at = now
        job.last_error = None
        job.started_at = None
        job.completed_at = None

    batch.status = BatchStatus.QUEUED
    batch.error_reason = None
    batch.analysis_json = None
    batch.structured_json = None
    refresh_upload_summary(db, upload_id, now)
    db.commit()
    logger.info("batch %s of upload %s requeued by operator", batch_id, upload_id)
    _notify(notifier, db, upload_id)
    return batch


def skip_batch(
    db: Session,
    upload_id: uuid.UUID,
    batch_id: uuid.UUID,
    reason: str | None = None,
    *,
    notifier: UploadNotifier | None = None,
    now: datetime | None = None,
) -> UploadBatch:
    """Give up on a batch: its open jobs become SKIPPED and the batch FAILED."""
    now = now or utcnow()
    reason = reason or "Skipped by operator"
    batch = _get_batch(db, upload_id, batch_id)
    if batch.status == BatchStatus.COMPLETED:
        raise BatchActionError(f"Batch {batch_id} already completed")

    for job in _batch_jobs(db, batch.id):
        if job.status in TERMINAL_JOB_STATUSES:
            continue
        _supersede_live_attempts(db, job.id, now, reason, "skipped")
        job.status = JobStatus.SKIPPED
        job.completed_at = now
        job.last_error = reason

    batch.status = BatchStatus.FAILED
    batch.error_reason = reason
    refresh_upload_summary(db, upload_id, now)
    _enqueue_finalization(db, upload_id, now)
    db.commit()
    logger.info("batch %s of upload %s skipped: %s", batch_id, upload_id, reason)
    _notify(notifier, db, upload_id)
    return batch


# ── Progress ─────────────────────────────────────────────────────────────────


def _job_progress(job: PipelineJob) -> JobProgress:
    progress = JobProgress.model_validate(job, from_attributes=True)
    progress.attempts = sorted(progress.attempts, key=lambda a: a.started_at, reverse=True)
    return progress


def get_upload_progress(db: Session, upload_id: uuid.UUID) -> UploadProgress | None:
    """Return the upload -> batches -> jobs -> attempts tree, or None."""
    upload = db.get(SpreadsheetUpload, upload_id, populate_existing=True)
    if upload is None:
        return None
    jobs = list(
        db.scalars(
            select(PipelineJob)
            .where(PipelineJob.upload_id == upload_id)
            .order_by(PipelineJob.created_at.asc(), PipelineJob.priority.desc())
        )
    )
    by_batch: dict[uuid.UUID | None, list[JobProgress]] = {}
    for job in jobs:
        by_batch.setdefault(job.batch_id, []).append(_job_progress(job))

    batches = [
        BatchProgress(
            id=batch.id,
            label=batch.label,
            group_key=batch.group_key,
            municipality=batch.municipality,
            state=batch.state,
            position=batch.position,
            status=batch.status.value,
            error_reason=batch.error_reason,
            row_count=len(batch.raw_rows or []),
            jobs=by_batch.get(batch.id, []),
        )
        for batch in upload.batches
    ]
    return UploadProgress(
        id=upload.id,
        status=upload.status.value,
        uploader_email=upload.uploader_email,
        original_filename=upload.original_filename,
        force_hidden=upload.force_hidden,
        queued_at=upload.queued_at,
        started_at=upload.started_at,
        completed_at=upload.completed_at,
        created_at=upload.created_at,
        summary=UploadSummary.model_validate(upload.summary_json) if upload.summary_json else None,
        batches=batches,
        finalization_jobs=by_batch.get(None, []),
    )

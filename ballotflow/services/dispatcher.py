"""Dispatcher: runs READY jobs through their handlers under per-model rate limits.

One run reclaims stale jobs, picks up to ``max_jobs`` dispatchable jobs and
works through them with a small thread pool. Each worker has its own session;
a shared cursor hands out jobs until the list or the time budget runs out.
"""

import logging
import threading
import time
import uuid
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from sqlalchemy.orm import Session, sessionmaker

from ballotflow.models.job import JobStatus, JobType, PipelineJob
from ballotflow.schemas.jobs import DispatchError, DispatcherRunStats, result_usage
from ballotflow.services.errors import JobNotReady, PipelineError, StaleAttemptError
from ballotflow.services.job_handlers import JOB_HANDLERS, Handler, JobContext
from ballotflow.services.queue import (
    claim_job,
    list_dispatchable,
    record_failure,
    record_success,
    reset_stale_jobs,
    schedule_retry,
)
from ballotflow.services.rate_limit import adjust_usage, cleanup_old_rate_windows, reserve_capacity
from ballotflow.services.runtime import PipelineServices

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10

# A candidate is (model, is_fallback); local jobs get a single (None, False).
Candidate = tuple[str | None, bool]


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True


def _retry_after(exc: Exception) -> float | None:
    return exc.retry_after if isinstance(exc, PipelineError) else None


def _status_code(exc: Exception) -> int | None:
    return exc.status if isinstance(exc, PipelineError) else None


def _usage_delta(actual: int | None, estimate: int) -> int:
    """Correction from the reserved estimate to the reported count; unreported keeps the estimate."""
    return 0 if actual is None else actual - estimate


def candidate_models(job: PipelineJob) -> list[Candidate]:
    """Preferred models first, then fallbacks not already listed."""
    preferred = list(job.preferred_models or [])
    candidates: list[Candidate] = [(m, False) for m in preferred]
    candidates += [(m, True) for m in job.fallback_models or [] if m not in preferred]
    return candidates or [(None, False)]


def _merge(into: DispatcherRunStats, part: DispatcherRunStats) -> None:
    into.attempted += part.attempted
    into.succeeded += part.succeeded
    into.failed += part.failed
    into.skipped += part.skipped
    into.rate_limited += part.rate_limited
    room = MAX_REPORTED_ERRORS - len(into.errors)
    if room > 0:
        into.errors.extend(part.errors[:room])


class Dispatcher:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        services: PipelineServices,
        handlers: Mapping[JobType, Handler] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._services = services
        self._handlers = handlers or JOB_HANDLERS

    def run(self, max_jobs: int | None = None, time_budget: float | None = None) -> DispatcherRunStats:
        settings = self._services.settings
        max_jobs = max_jobs or settings.dispatch_max_per_tick
        budget = settings.dispatch_time_budget_seconds if time_budget is None else time_budget
        deadline = time.monotonic() + budget
        stats = DispatcherRunStats()

        with self._session_factory() as db:
            stats.stale_resets = reset_stale_jobs(
                db,
                timedelta(seconds=settings.job_timeout_seconds),
                base_delay=settings.retry_base_delay_seconds,
                notifier=self._services.notifier,
            )
            cleanup_old_rate_windows(db, settings.rate_window_retention_days)
            job_ids = [job.id for job in list_dispatchable(db, max_jobs)]

        if not job_ids:
            return stats

        lock = threading.Lock()
        cursor = 0

        def next_job_id() -> uuid.UUID | None:
            nonlocal cursor
            with lock:
                if cursor >= len(job_ids):
                    return None
                if time.monotonic() >= deadline:
                    # Out of time: whatever is left waits for the next run.
                    stats.skipped += len(job_ids) - cursor
                    cursor = len(job_ids)
                    return None
                job_id = job_ids[cursor]
                cursor += 1
                return job_id

        def worker() -> None:
            with self._session_factory() as db:
                while (job_id := next_job_id()) is not None:
                    part = self._process(db, job_id)
                    with lock:
                        _merge(stats, part)

        workers = max(1, min(settings.dispatch_concurrency, len(job_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as pool:
            futures = [pool.submit(worker) for _ in range(workers)]
            for future in futures:
                future.result()

        logger.info(
            "dispatch run: %d attempted, %d succeeded, %d failed, %d skipped, %d rate limited",
            stats.attempted,
            stats.succeeded,
            stats.failed,
            stats.skipped,
            stats.rate_limited,
        )
        return stats

    def _process(self, db: Session, job_id: uuid.UUID) -> DispatcherRunStats:
        part = DispatcherRunStats()
        job = db.get(PipelineJob, job_id, populate_existing=True)
        if job is None or job.status != JobStatus.READY:
            part.skipped += 1
            return part

        for model, is_fallback in candidate_models(job):
            outcome = self._try_candidate(db, job, model, is_fallback, part)
            if outcome != "next":
                return part
        part.skipped += 1
        return part

    def _try_candidate(
        self,
        db: Session,
        job: PipelineJob,
        model: str | None,
        is_fallback: bool,
        part: DispatcherRunStats,
    ) -> str:
        """Run *job* on one candidate model. Returns "done", "stop" or "next"."""
        settings = self._services.settings
        window_start = None
        if model is not None:
            reservation = reserve_capacity(
                db,
                settings.rate_limits,
                model,
                request_tokens=job.estimated_request_tokens,
                response_tokens=job.estimated_response_tokens,
            )
            if not reservation["allowed"]:
                part.rate_limited += 1
                if reservation["retry_at"] is not None:
                    schedule_retry(db, job.id, reservation["retry_at"], reservation["reason"] or "")
                return "next"
            window_start = reservation["window_start"]

        try:
            attempt = claim_job(
                db, job.id, model=model, is_fallback=is_fallback, window_start=window_start
            )
        except JobNotReady:
            part.skipped += 1
            if model is not None and window_start is not None:
                adjust_usage(
                    db,
                    model,
                    window_start,
                    requests_delta=-1,
                    request_tokens_delta=-job.estimated_request_tokens,
                    response_tokens_delta=-job.estimated_response_tokens,
                )
            return "done"

        part.attempted += 1
        job = db.get(PipelineJob, job.id, populate_existing=True)
        ctx = JobContext(
            db=db,
            job=job,
            settings=settings,
            prompts=self._services.prompts,
            generator=self._services.generator,
            notifier=self._services.notifier,
        )
        try:
            result = self._handlers[job.type](ctx, model)
            record_success(db, job.id, attempt.id, result, notifier=self._services.notifier)
        except StaleAttemptError as exc:
            # The attempt was reclaimed while we ran; its result is discarded.
            logger.warning("job %s: %s", job.id, exc)
            part.skipped += 1
            return "done"
        except Exception as exc:
            db.rollback()
            return self._fail(db, job, attempt.id, model, exc, part)

        part.succeeded += 1
        if model is not None and window_start is not None:
            usage = result_usage(result)
            adjust_usage(
                db,
                model,
                window_start,
                request_tokens_delta=_usage_delta(usage.request_tokens, job.estimated_request_tokens),
                response_tokens_delta=_usage_delta(
                    usage.response_tokens, job.estimated_response_tokens
                ),
                batch_tokens_delta=(
                    usage.total_tokens
                    if usage.total_tokens is not None
                    else job.estimated_request_tokens + job.estimated_response_tokens
                ),
            )
        return "done"

    def _fail(
        self,
        db: Session,
        job: PipelineJob,
        attempt_id: uuid.UUID,
        model: str | None,
        exc: Exception,
        part: DispatcherRunStats,
    ) -> str:
        retryable = is_retryable(exc)
        retry_after = _retry_after(exc)
        message = str(exc) or type(exc).__name__
        part.failed += 1
        part.errors.append(DispatchError(job_id=job.id, message=message))
        logger.error(
            "job %s (%s) failed on %s (retryable=%s): %s",
            job.id,
            job.type,
            model or "local",
            retryable,
            message,
        )
        try:
            job = record_failure(
                db,
                job.id,
                attempt_id,
                message,
                retryable=retryable,
                error_type=type(exc).__name__,
                status_code=_status_code(exc),
                retry_after=retry_after if retryable else None,
                base_delay=self._services.settings.retry_base_delay_seconds,
                notifier=self._services.notifier,
            )
        except StaleAttemptError as stale:
            logger.warning("job %s: %s", job.id, stale)
            return "stop"
        if retryable and retry_after and job.status == JobStatus.READY:
            return "next"
        return "stop"

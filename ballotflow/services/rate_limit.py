"""Per-model minute-window rate limiting backed by the rate_windows table.

Admission is a compare-and-increment on the window row's ``version`` column, so
several dispatcher workers (or processes) can reserve capacity against the
same model without over-admitting.
"""

import logging
import random
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Row, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ballotflow.config import ModelRateLimit
from ballotflow.db import utcnow
from ballotflow.models.rate_window import RateWindow
from ballotflow.services.types import RateReservation

logger = logging.getLogger(__name__)

MAX_RESERVE_ATTEMPTS = 3
CONFLICT_RETRY_SECONDS = 5


def minute_start(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0)


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _load_window(db: Session, model: str, window_start: datetime) -> Row[Any]:
    """Return the window's counters, creating the row when it does not exist yet."""
    stmt = select(
        RateWindow.id,
        RateWindow.request_count,
        RateWindow.request_tokens,
        RateWindow.batch_tokens,
        RateWindow.version,
    ).where(RateWindow.model == model, RateWindow.window_start == window_start)
    row = db.execute(stmt).one_or_none()
    if row is not None:
        return row
    try:
        db.execute(
            insert(RateWindow).values(
                model=model,
                window_start=window_start,
                request_count=0,
                request_tokens=0,
                response_tokens=0,
                batch_tokens=0,
                version=0,
            )
        )
        db.commit()
    except IntegrityError:
        # Another worker created the row first.
        db.rollback()
    return db.execute(stmt).one()


def _day_requests(db: Session, model: str, now: datetime) -> int:
    start = day_start(now)
    total = db.execute(
        select(func.coalesce(func.sum(RateWindow.request_count), 0)).where(
            RateWindow.model == model,
            RateWindow.window_start >= start,
            RateWindow.window_start < start + timedelta(days=1),
        )
    ).scalar_one()
    return int(total)


def reserve_capacity(
    db: Session,
    limits: Mapping[str, ModelRateLimit],
    model: str,
    *,
    request_tokens: int = 0,
    response_tokens: int = 0,
    batch_tokens: int = 0,
    requests: int = 1,
    now: datetime | None = None,
) -> RateReservation:
    """Reserve one call's worth of capacity for *model* in the current minute.

    Checks rpm, tpm and the batch token cap against the minute window, then
    rpd against the day's windows. The first exceeded limit decides the
    reason and retry time. Models without configured limits are always
    admitted.
    """
    now = now or utcnow()
    window = minute_start(now)
    limit = limits.get(model)
    if limit is None:
        return RateReservation(allowed=True, window_start=window, retry_at=None, reason=None)

    next_minute = window + timedelta(minutes=1)
    for attempt in range(MAX_RESERVE_ATTEMPTS):
        row = _load_window(db, model, window)

        if row.request_count + requests > limit.rpm:
            return RateReservation(
                allowed=False, window_start=window, retry_at=next_minute, reason="rpm"
            )
        if row.request_tokens + request_tokens > limit.tpm:
            return RateReservation(
                allowed=False, window_start=window, retry_at=next_minute, reason="tpm"
            )
        if limit.batch_tokens is not None and row.batch_tokens + batch_tokens > limit.batch_tokens:
            return RateReservation(
                allowed=False, window_start=window, retry_at=next_minute, reason="batchTokens"
            )
        if limit.rpd is not None and _day_requests(db, model, now) + requests > limit.rpd:
            return RateReservation(
                allowed=False,
                window_start=window,
                retry_at=day_start(now) + timedelta(days=1),
                reason="rpd",
            )

        result = db.execute(
            update(RateWindow)
            .where(RateWindow.id == row.id, RateWindow.version == row.version)
            .values(
                request_count=RateWindow.request_count + requests,
                request_tokens=RateWindow.request_tokens + request_tokens,
                response_tokens=RateWindow.response_tokens + response_tokens,
                batch_tokens=RateWindow.batch_tokens + batch_tokens,
                version=RateWindow.version + 1,
            )
        )
        if result.rowcount == 1:
            db.commit()
            return RateReservation(allowed=True, window_start=window, retry_at=None, reason=None)
        db.rollback()
        logger.debug("rate window write conflict for %s (attempt %d)", model, attempt + 1)

    logger.info("rate window for %s stayed contended; deferring", model)
    return RateReservation(
        allowed=False,
        window_start=window,
        retry_at=now + timedelta(seconds=CONFLICT_RETRY_SECONDS),
        reason="conflict",
    )


def adjust_usage(
    db: Session,
    model: str,
    window_start: datetime,
    *,
    requests_delta: int = 0,
    request_tokens_delta: int = 0,
    response_tokens_delta: int = 0,
    batch_tokens_delta: int = 0,
) -> None:
    """Apply signed corrections to a window's counters (estimate vs actual, or a refund)."""
    if not (requests_delta or request_tokens_delta or response_tokens_delta or batch_tokens_delta):
        return
    db.execute(
        update(RateWindow)
        .where(RateWindow.model == model, RateWindow.window_start == window_start)
        .values(
            request_count=RateWindow.request_count + requests_delta,
            request_tokens=RateWindow.request_tokens + request_tokens_delta,
            response_tokens=RateWindow.response_tokens + response_tokens_delta,
            batch_tokens=RateWindow.batch_tokens + batch_tokens_delta,
            version=RateWindow.version + 1,
        )
    )
    db.commit()


def cleanup_old_rate_windows(
    db: Session, older_than_days: int = 2, now: datetime | None = None
) -> int:
    threshold = (now or utcnow()) - timedelta(days=older_than_days)
    result = db.execute(delete(RateWindow).where(RateWindow.window_start < threshold))
    db.commit()
    if result.rowcount:
        logger.info("purged %d rate windows older than %s", result.rowcount, threshold)
    return result.rowcount


def compute_backoff_delay(retry_count: int, base_seconds: float = 30.0) -> timedelta:
    """Exponential backoff ``base * 2**retry_count`` plus jitter in ``[0, base)``."""
    jitter = random.random() * base_seconds
    return timedelta(seconds=base_seconds * (2**retry_count) + jitter)

"""Unit tests for per-model rate windows."""

from collections import namedtuple
from datetime import datetime, timedelta
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.orm import Session

from ballotflow.config import ModelRateLimit
from ballotflow.models.rate_window import RateWindow
from ballotflow.services.rate_limit import (
    adjust_usage,
    cleanup_old_rate_windows,
    compute_backoff_delay,
    reserve_capacity,
)

NOW = datetime(2026, 3, 2, 10, 15, 42)
WINDOW = datetime(2026, 3, 2, 10, 15)


def _window(db: Session, model: str = "m1") -> RateWindow:
    return db.scalars(
        select(RateWindow).where(RateWindow.model == model).execution_options(populate_existing=True)
    ).one()


class TestReserveCapacity:
    def test_unlisted_model_is_always_allowed(self, db: Session) -> None:
        result = reserve_capacity(db, {}, "free-model", request_tokens=10, now=NOW)

        assert result["allowed"] is True
        assert result["window_start"] == WINDOW
        assert db.scalars(select(RateWindow)).all() == []

    def test_admits_exactly_up_to_rpm(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=3, tpm=1_000_000)}

        results = [reserve_capacity(db, limits, "m1", now=NOW) for _ in range(5)]

        assert [r["allowed"] for r in results] == [True, True, True, False, False]
        assert results[3]["reason"] == "rpm"
        assert results[3]["retry_at"] == WINDOW + timedelta(minutes=1)
        assert _window(db).request_count == 3

    def test_rejects_over_token_budget(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=100, tpm=1_000)}

        first = reserve_capacity(db, limits, "m1", request_tokens=600, now=NOW)
        second = reserve_capacity(db, limits, "m1", request_tokens=600, now=NOW)

        assert first["allowed"] is True
        assert second["allowed"] is False
        assert second["reason"] == "tpm"

    def test_rejects_over_batch_token_cap(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=100, tpm=1_000_000, batch_tokens=50)}

        result = reserve_capacity(db, limits, "m1", batch_tokens=60, now=NOW)

        assert result["allowed"] is False
        assert result["reason"] == "batchTokens"

    def test_daily_cap_counts_earlier_windows(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=10, tpm=1_000_000, rpd=2)}

        reserve_capacity(db, limits, "m1", now=NOW - timedelta(hours=2))
        reserve_capacity(db, limits, "m1", now=NOW - timedelta(hours=1))
        result = reserve_capacity(db, limits, "m1", now=NOW)

        assert result["allowed"] is False
        assert result["reason"] == "rpd"
        assert result["retry_at"] == datetime(2026, 3, 3)

    def test_new_minute_starts_a_new_window(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=1, tpm=1_000_000)}

        assert reserve_capacity(db, limits, "m1", now=NOW)["allowed"] is True
        assert reserve_capacity(db, limits, "m1", now=NOW + timedelta(minutes=1))["allowed"] is True

    def test_persistent_version_conflict_degrades_to_rate_limited(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=10, tpm=1_000_000)}
        reserve_capacity(db, limits, "m1", now=NOW)
        window = _window(db)
        Stale = namedtuple("Stale", "id request_count request_tokens batch_tokens version")
        stale = Stale(window.id, 0, 0, 0, window.version + 99)

        with patch("ballotflow.services.rate_limit._load_window", return_value=stale):
            result = reserve_capacity(db, limits, "m1", now=NOW)

        assert result["allowed"] is False
        assert result["reason"] == "conflict"
        assert result["retry_at"] > NOW
        assert _window(db).request_count == 1


class TestAdjustUsage:
    def test_applies_signed_deltas(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=10, tpm=1_000_000)}
        reserve_capacity(db, limits, "m1", request_tokens=500, response_tokens=400, now=NOW)

        adjust_usage(db, "m1", WINDOW, request_tokens_delta=-100, batch_tokens_delta=900)

        window = _window(db)
        assert window.request_tokens == 400
        assert window.batch_tokens == 900
        assert window.response_tokens == 400

    def test_refund_releases_the_request(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=1, tpm=1_000_000)}
        reserve_capacity(db, limits, "m1", now=NOW)

        adjust_usage(db, "m1", WINDOW, requests_delta=-1)

        assert reserve_capacity(db, limits, "m1", now=NOW)["allowed"] is True


class TestCleanupOldRateWindows:
    def test_purges_only_old_windows(self, db: Session) -> None:
        limits = {"m1": ModelRateLimit(rpm=10, tpm=1_000_000)}
        reserve_capacity(db, limits, "m1", now=NOW - timedelta(days=3))
        reserve_capacity(db, limits, "m1", now=NOW)

        removed = cleanup_old_rate_windows(db, older_than_days=2, now=NOW)

        assert removed == 1
        assert _window(db).window_start == WINDOW


class TestComputeBackoffDelay:
    def test_grows_exponentially_with_bounded_jitter(self) -> None:
        for retry_count in range(4):
            delay = compute_backoff_delay(retry_count, base_seconds=10).total_seconds()
            floor = 10 * 2**retry_count
            assert floor <= delay < floor + 10

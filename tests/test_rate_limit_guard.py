from datetime import datetime, timedelta, timezone

import pytest

from activity_ops.connectors.exceptions import RateLimitException
from activity_ops.connectors.rate_limit import (
    DEFAULT_BLOCKED_DELAY,
    BudgetLevel,
    RateLimitGuard,
    RateLimitSnapshot,
    extract_retry_after,
    parse_rate_limit,
    resume_time,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestParseRateLimit:
    def test_reads_headers(self):
        snapshot = parse_rate_limit(
            {"x-ratelimit-remaining": "42", "x-ratelimit-reset": str(int(NOW.timestamp()))}
        )
        assert snapshot.remaining == 42
        assert snapshot.reset_at == NOW
        assert snapshot.is_known

    def test_title_case_headers(self):
        snapshot = parse_rate_limit({"X-Ratelimit-Remaining": "7"})
        assert snapshot.remaining == 7

    def test_missing_or_garbage_is_unknown(self):
        assert parse_rate_limit({}) == RateLimitSnapshot()
        snapshot = parse_rate_limit(
            {"x-ratelimit-remaining": "lots", "x-ratelimit-reset": "soon"}
        )
        assert snapshot.remaining is None
        assert snapshot.reset_at is None
        assert not snapshot.is_known

    def test_retry_after(self):
        assert extract_retry_after({"retry-after": "30"}) == 30.0
        assert extract_retry_after({"retry-after": "-5"}) == 0.0
        assert extract_retry_after({"retry-after": "later"}) is None
        assert extract_retry_after({}) is None


class TestGuard:
    @pytest.mark.parametrize(
        "remaining, level",
        [
            (None, BudgetLevel.HEALTHY),
            (5000, BudgetLevel.HEALTHY),
            (101, BudgetLevel.HEALTHY),
            (100, BudgetLevel.LOW),
            (1, BudgetLevel.LOW),
            (0, BudgetLevel.EXHAUSTED),
        ],
    )
    def test_classify(self, remaining, level):
        guard = RateLimitGuard(threshold=100)
        assert guard.classify(RateLimitSnapshot(remaining=remaining)) is level

    def test_pause_at_threshold(self):
        guard = RateLimitGuard(threshold=100)
        assert guard.should_pause(RateLimitSnapshot(remaining=100))
        assert not guard.should_pause(RateLimitSnapshot(remaining=101))

    def test_unknown_budget_never_pauses(self):
        assert not RateLimitGuard(threshold=100).should_pause(RateLimitSnapshot())

    def test_threshold_from_environment(self, monkeypatch):
        monkeypatch.setenv("SYNC_RATE_LIMIT_THRESHOLD", "25")
        assert RateLimitGuard().threshold == 25

    def test_invalid_threshold_falls_back(self, monkeypatch):
        monkeypatch.setenv("SYNC_RATE_LIMIT_THRESHOLD", "many")
        assert RateLimitGuard().threshold == 100

    def test_check_raises_with_reset(self):
        reset = NOW + timedelta(minutes=10)
        guard = RateLimitGuard(threshold=100)

        with pytest.raises(RateLimitException) as excinfo:
            guard.check(RateLimitSnapshot(remaining=3, reset_at=reset))

        assert excinfo.value.reset_at == reset
        assert excinfo.value.remaining == 3

    def test_check_passes_when_healthy(self):
        RateLimitGuard(threshold=100).check(RateLimitSnapshot(remaining=4000))


class TestResumeTime:
    def test_future_reset_is_used(self):
        reset = NOW + timedelta(minutes=12)
        assert resume_time(reset, NOW) == reset

    def test_missing_reset_uses_default_delay(self):
        assert resume_time(None, NOW) == NOW + DEFAULT_BLOCKED_DELAY

    def test_past_reset_uses_default_delay(self):
        assert resume_time(NOW - timedelta(seconds=1), NOW) == NOW + timedelta(minutes=5)

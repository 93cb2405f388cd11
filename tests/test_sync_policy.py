from datetime import datetime, timedelta, timezone

import pytest

from activity_ops.sync.policy import (
    DEFAULT_SYNC_WINDOW,
    MAX_SYNC_WINDOW,
    AccountState,
    DecisionAction,
    SyncReason,
    SyncTrigger,
    calculate_sync_since,
    can_start,
    evaluate,
    reason_to_user_message,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _state(**overrides):
    values = {
        "user_id": "user_1",
        "repositories": ("acme/api",),
        "sync_status": "idle",
    }
    values.update(overrides)
    return AccountState(**values)


class TestEvaluate:
    def test_ready_account_starts(self):
        decision = evaluate(_state(), SyncTrigger.MANUAL, NOW, threshold=100)
        assert decision.action is DecisionAction.START
        assert decision.reason is SyncReason.READY
        assert can_start(decision)

    def test_no_user_wins_over_everything(self):
        state = _state(
            user_id=None,
            repositories=(),
            sync_status="syncing",
            rate_limit_remaining=0,
            rate_limit_reset=NOW + timedelta(minutes=5),
        )
        decision = evaluate(state, SyncTrigger.CRON, NOW, threshold=100)
        assert decision.reason is SyncReason.NO_USER
        assert decision.action is DecisionAction.SKIP

    def test_no_repositories_before_already_syncing(self):
        state = _state(repositories=(), sync_status="syncing")
        assert evaluate(state, SyncTrigger.CRON, NOW).reason is SyncReason.NO_REPOSITORIES

    def test_non_manual_skips_while_syncing(self):
        state = _state(sync_status="syncing")
        for trigger in (SyncTrigger.CRON, SyncTrigger.WEBHOOK, SyncTrigger.MAINTENANCE):
            assert evaluate(state, trigger, NOW).reason is SyncReason.ALREADY_SYNCING

    def test_manual_is_not_skipped_by_syncing_status(self):
        state = _state(sync_status="syncing")
        assert can_start(evaluate(state, SyncTrigger.MANUAL, NOW, threshold=100))

    def test_manual_cooldown(self):
        state = _state(
            last_synced_at=NOW - timedelta(hours=1),
            last_manual_sync_at=NOW - timedelta(minutes=2),
        )
        decision = evaluate(state, SyncTrigger.MANUAL, NOW)

        assert decision.reason is SyncReason.COOLDOWN_ACTIVE
        assert decision.details["cooldown_ms"] == 180_000

    def test_cooldown_expired(self):
        state = _state(
            last_synced_at=NOW - timedelta(hours=1),
            last_manual_sync_at=NOW - timedelta(minutes=5),
        )
        assert can_start(evaluate(state, SyncTrigger.MANUAL, NOW, threshold=100))

    def test_cooldown_bypassed_when_data_is_stale(self):
        state = _state(
            last_synced_at=NOW - timedelta(hours=49),
            last_manual_sync_at=NOW - timedelta(minutes=1),
        )
        assert can_start(evaluate(state, SyncTrigger.MANUAL, NOW, threshold=100))

    def test_cooldown_only_applies_to_manual(self):
        state = _state(
            last_synced_at=NOW - timedelta(hours=1),
            last_manual_sync_at=NOW - timedelta(minutes=1),
        )
        assert can_start(evaluate(state, SyncTrigger.WEBHOOK, NOW, threshold=100))

    def test_rate_limit_blocks_until_reset(self):
        reset = NOW + timedelta(minutes=20)
        state = _state(rate_limit_remaining=50, rate_limit_reset=reset)
        decision = evaluate(state, SyncTrigger.MANUAL, NOW, threshold=100)

        assert decision.action is DecisionAction.BLOCK
        assert decision.reason is SyncReason.RATE_LIMITED
        assert decision.details["blocked_until"] == reset

    def test_rate_limit_ignored_after_reset(self):
        state = _state(rate_limit_remaining=0, rate_limit_reset=NOW - timedelta(seconds=1))
        assert can_start(evaluate(state, SyncTrigger.MANUAL, NOW, threshold=100))

    def test_scheduled_triggers_keep_a_reserve(self):
        state = _state(rate_limit_remaining=400, rate_limit_reset=NOW + timedelta(minutes=30))

        assert can_start(evaluate(state, SyncTrigger.WEBHOOK, NOW, threshold=100))
        cron = evaluate(state, SyncTrigger.CRON, NOW, threshold=100)
        assert cron.reason is SyncReason.RATE_LIMITED

    def test_threshold_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("SYNC_RATE_LIMIT_THRESHOLD", "10")
        state = _state(rate_limit_remaining=50, rate_limit_reset=NOW + timedelta(minutes=5))
        assert can_start(evaluate(state, SyncTrigger.MANUAL, NOW))

    def test_string_trigger_accepted(self):
        assert can_start(evaluate(_state(), "manual", NOW, threshold=100))

    def test_unknown_trigger_rejected(self):
        with pytest.raises(ValueError):
            evaluate(_state(), "nightly", NOW)

    def test_inputs_not_mutated(self):
        state = _state(last_manual_sync_at=NOW - timedelta(minutes=1))
        before = state
        evaluate(state, SyncTrigger.MANUAL, NOW, threshold=100)
        assert state == before


class TestCalculateSyncSince:
    def test_first_sync_uses_default_window(self):
        assert calculate_sync_since(None, NOW) == NOW - DEFAULT_SYNC_WINDOW

    def test_recent_sync_resumes_from_last(self):
        last = NOW - timedelta(hours=6)
        assert calculate_sync_since(last, NOW) == last

    def test_old_sync_is_capped(self):
        last = NOW - timedelta(days=365)
        assert calculate_sync_since(last, NOW) == NOW - MAX_SYNC_WINDOW


class TestUserMessages:
    @pytest.mark.parametrize("reason", list(SyncReason))
    def test_every_reason_has_a_message(self, reason):
        assert reason_to_user_message(reason)

    def test_cooldown_message_rounds_up(self):
        message = reason_to_user_message(
            SyncReason.COOLDOWN_ACTIVE, {"cooldown_ms": 61_000}
        )
        assert message == "Please wait 2 minutes before syncing again"

    def test_cooldown_message_singular(self):
        message = reason_to_user_message(
            SyncReason.COOLDOWN_ACTIVE, {"cooldown_ms": 30_000}
        )
        assert message == "Please wait 1 minute before syncing again"

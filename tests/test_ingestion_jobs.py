import uuid
from datetime import datetime, timedelta, timezone

import pytest

from activity_ops.models import IngestionJob, JobStatus
from activity_ops.sync import jobs as job_ops
from activity_ops.sync.batches import create_batch, maybe_finalize_batch
from activity_ops.sync.jobs import TerminalJobError

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def batch(db_session, make_account):
    account = make_account()
    batch = create_batch(
        db_session,
        account,
        trigger="manual",
        since=NOW - timedelta(days=30),
        until=NOW,
        repositories=account.repositories,
    )
    db_session.commit()
    return batch


@pytest.fixture
def job(batch):
    return batch.jobs[0]


class TestTransitions:
    def test_new_job_is_pending(self, job):
        assert job.status == JobStatus.PENDING
        assert job.cursor is None
        assert job.events_ingested == 0
        assert job.since == NOW - timedelta(days=30)
        assert job.until == NOW

    def test_mark_running_sets_started_once(self, db_session, job):
        job_ops.mark_running(db_session, job.id, worker_id="w1", now=NOW)
        job_ops.mark_blocked(db_session, job.id, NOW + timedelta(minutes=5), now=NOW)
        job_ops.mark_running(db_session, job.id, worker_id="w2", now=NOW + timedelta(minutes=6))

        assert job.status == JobStatus.RUNNING
        assert job.started_at == NOW
        assert job.worker_id == "w2"
        assert job.blocked_until is None

    def test_progress_accumulates(self, db_session, job):
        job_ops.mark_running(db_session, job.id, now=NOW)
        job_ops.update_progress(db_session, job.id, "timeline:2", inserted=90, duplicates=10)
        job_ops.update_progress(
            db_session, job.id, "commits:1", inserted=5, errors=1, rate_limit_remaining=4000
        )

        assert job.cursor == "commits:1"
        assert job.events_ingested == 95
        assert job.duplicates == 10
        assert job.errors == 1
        assert job.pages_fetched == 2
        assert job.rate_limit_remaining == 4000

    def test_progress_percentage_capped_below_completion(self, db_session, job):
        job_ops.update_progress(db_session, job.id, None, progress=150)
        assert job.progress == 99

    def test_cursor_cannot_regress(self, db_session, job):
        job_ops.update_progress(db_session, job.id, "commits:1")

        with pytest.raises(ValueError):
            job_ops.update_progress(db_session, job.id, "timeline:5")

        job_ops.update_progress(db_session, job.id, "commits:3")
        with pytest.raises(ValueError):
            job_ops.update_progress(db_session, job.id, "commits:2")

        assert job.cursor == "commits:3"
        assert job.pages_fetched == 2

    def test_none_cursor_keeps_position(self, db_session, job):
        job_ops.update_progress(db_session, job.id, "timeline:4")
        job_ops.update_progress(db_session, job.id, None, inserted=1)
        assert job.cursor == "timeline:4"

    def test_blocked_keeps_cursor_and_counts(self, db_session, job):
        until = NOW + timedelta(minutes=15)
        job_ops.mark_running(db_session, job.id, now=NOW)
        job_ops.update_progress(db_session, job.id, "timeline:3", inserted=200)
        job_ops.mark_blocked(db_session, job.id, until, reason="rate limited", now=NOW)

        assert job.status == JobStatus.BLOCKED
        assert job.blocked_until == until
        assert job.cursor == "timeline:3"
        assert job.events_ingested == 200
        assert job.last_error == "rate limited"

    def test_completed_clears_cursor(self, db_session, job):
        job_ops.update_progress(db_session, job.id, "commits:2")
        job_ops.mark_completed(db_session, job.id, now=NOW)

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.cursor is None
        assert job.completed_at == NOW

    def test_terminal_jobs_are_immutable(self, db_session, job):
        job_ops.mark_failed(db_session, job.id, "boom", now=NOW)

        with pytest.raises(TerminalJobError):
            job_ops.mark_running(db_session, job.id)
        with pytest.raises(TerminalJobError):
            job_ops.update_progress(db_session, job.id, "commits:1")
        with pytest.raises(TerminalJobError):
            job_ops.mark_completed(db_session, job.id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "boom"

    def test_missing_job(self, db_session):
        with pytest.raises(ValueError):
            job_ops.mark_running(db_session, uuid.uuid4())


class TestResume:
    def test_resume_blocked_job(self, db_session, job):
        job_ops.update_progress(db_session, job.id, "timeline:2", inserted=100)
        job_ops.mark_blocked(db_session, job.id, NOW, now=NOW)

        job_ops.resume_job(db_session, job.id, now=NOW + timedelta(minutes=1))

        assert job.status == JobStatus.PENDING
        assert job.blocked_until is None
        assert job.cursor == "timeline:2"
        assert job.events_ingested == 100

    def test_blocked_job_runs_directly_or_via_pending(self, db_session, batch):
        direct, swept = batch.jobs
        for job in (direct, swept):
            job_ops.mark_running(db_session, job.id, now=NOW)
            job_ops.mark_blocked(db_session, job.id, NOW - timedelta(minutes=1), now=NOW)
        db_session.commit()

        job_ops.mark_running(db_session, direct.id, now=NOW)
        job_ops.resume_job(db_session, swept.id, now=NOW)

        assert direct.status == JobStatus.RUNNING
        assert swept.status == JobStatus.PENDING
        assert job_ops.find_stuck_blocked_jobs(db_session, now=NOW) == []
        job_ops.mark_running(db_session, swept.id, now=NOW)
        assert swept.status == JobStatus.RUNNING

    def test_resume_requires_blocked(self, db_session, job):
        with pytest.raises(ValueError):
            job_ops.resume_job(db_session, job.id)


class TestQueries:
    def test_active_jobs_for_account(self, db_session, batch):
        first, second = batch.jobs
        job_ops.mark_completed(db_session, first.id)
        db_session.commit()

        active = job_ops.get_active_jobs_for_account(db_session, batch.account_id)
        assert [job.id for job in active] == [second.id]

    def test_find_stuck_blocked_jobs(self, db_session, batch):
        first, second = batch.jobs
        job_ops.mark_blocked(db_session, first.id, NOW - timedelta(minutes=1), now=NOW)
        job_ops.mark_blocked(db_session, second.id, NOW + timedelta(minutes=10), now=NOW)
        db_session.commit()

        stuck = job_ops.find_stuck_blocked_jobs(db_session, now=NOW)
        assert [job.id for job in stuck] == [first.id]


class TestSweeps:
    def test_fail_zombie_jobs(self, db_session, batch):
        stale, fresh = batch.jobs
        job_ops.mark_running(db_session, stale.id, now=NOW - timedelta(minutes=20))
        job_ops.mark_running(db_session, fresh.id, now=NOW - timedelta(minutes=2))
        db_session.commit()

        failed = job_ops.fail_zombie_jobs(db_session, stale_threshold_minutes=10, now=NOW)

        assert [job.id for job in failed] == [stale.id]
        assert stale.status == JobStatus.FAILED
        assert stale.last_error == job_ops.ZOMBIE_ERROR
        assert fresh.status == JobStatus.RUNNING

    def test_fail_long_blocked_jobs(self, db_session, batch):
        old, recent = batch.jobs
        job_ops.mark_blocked(
            db_session, old.id, NOW - timedelta(hours=20), now=NOW - timedelta(hours=25)
        )
        job_ops.mark_blocked(db_session, recent.id, NOW + timedelta(minutes=5), now=NOW)
        db_session.commit()

        failed = job_ops.fail_long_blocked_jobs(db_session, max_blocked_hours=24, now=NOW)

        assert [job.id for job in failed] == [old.id]
        assert old.last_error == job_ops.LONG_BLOCKED_ERROR
        assert recent.status == JobStatus.BLOCKED

    def test_clear_terminal_jobs_only_for_finalized_batches(self, db_session, batch):
        first, second = batch.jobs
        job_ops.mark_completed(db_session, first.id, now=NOW - timedelta(hours=3))
        db_session.commit()

        # Batch still active: nothing is removed.
        assert job_ops.clear_terminal_jobs(db_session, older_than_hours=1, now=NOW) == 0

        job_ops.mark_completed(db_session, second.id, now=NOW - timedelta(hours=2))
        maybe_finalize_batch(db_session, batch.id, now=NOW - timedelta(hours=2))
        db_session.commit()

        assert job_ops.clear_terminal_jobs(db_session, older_than_hours=1, now=NOW) == 2
        db_session.commit()
        assert db_session.query(IngestionJob).count() == 0

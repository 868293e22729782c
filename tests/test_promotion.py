"""
Tests for the delay promotion pipeline and the retry mover.
"""

from datetime import timedelta

from models import JobStatus, epoch_ms, utcnow
from promotion import DelayPromoter, is_due, time_until_ready


class TestDueness:
    def test_delay_counts_from_creation(self, make_job):
        job = make_job(delay_ms=2_000)
        assert not is_due(job, job.created + timedelta(milliseconds=1_999))
        assert is_due(job, job.created + timedelta(milliseconds=2_000))
        assert time_until_ready(job, job.created + timedelta(milliseconds=500)) == 1.5

    def test_pending_retry_blocks_until_next_run_at(self, make_job):
        now = utcnow()
        job = make_job(age_secs=60, next_run_at=(now + timedelta(seconds=4)).isoformat())
        assert not is_due(job, now)
        assert is_due(job, now + timedelta(seconds=4))


class TestPromoteReadyJobs:
    def test_promotes_due_jobs_only(self, db, lanes, make_job):
        due = make_job(priority=6)
        waiting = make_job(priority=6, delay_ms=60_000)

        assert DelayPromoter(db, lanes).promote_ready_jobs() == [due.id]

        assert db.get_job(due.id).status == "READY"
        assert db.get_job(waiting.id).status == "PENDING"
        assert lanes.pop_highest() == (6, due.id)
        assert lanes.pop_highest() is None

    def test_promotes_once_delay_elapses(self, db, lanes, make_job):
        job = make_job(priority=4, delay_ms=1_000)
        promoter = DelayPromoter(db, lanes)
        assert promoter.promote_ready_jobs(now=job.created) == []
        assert promoter.promote_ready_jobs(now=job.created + timedelta(seconds=1)) == [job.id]

    def test_rescan_does_not_double_enqueue(self, db, lanes, make_job):
        job = make_job(priority=4)
        promoter = DelayPromoter(db, lanes)
        promoter.promote_ready_jobs()
        assert promoter.promote_ready_jobs() == []
        assert lanes.length(4) == 1

    def test_already_queued_pending_job_is_not_pushed_again(self, db, lanes, make_job):
        job = make_job(priority=4)
        lanes.push(4, job.id)
        assert DelayPromoter(db, lanes).promote_ready_jobs() == []
        assert lanes.length(4) == 1
        assert db.get_job(job.id).status == "READY"

    def test_leaves_jobs_in_retry_backoff(self, db, lanes, make_job):
        job = make_job(age_secs=60, retry_count=1,
                       next_run_at=(utcnow() + timedelta(seconds=30)).isoformat())
        assert DelayPromoter(db, lanes).promote_ready_jobs() == []
        assert db.get_job(job.id).status == "PENDING"


class TestMoveDueRetries:
    def test_moves_due_retry_into_its_lane(self, db, lanes, make_job):
        now = utcnow()
        retry_at = now + timedelta(seconds=2)
        job = make_job(priority=3, retry_count=1, next_run_at=retry_at.isoformat())
        lanes.delayed_add(job.id, epoch_ms(retry_at))
        promoter = DelayPromoter(db, lanes)

        assert promoter.move_due_retries(now) == []
        assert db.get_job(job.id).status == "PENDING"

        assert promoter.move_due_retries(retry_at) == [job.id]
        reloaded = db.get_job(job.id)
        assert reloaded.status == "READY"
        assert reloaded.next_run_at is None
        assert lanes.pop_highest() == (3, job.id)
        assert lanes.delayed_score(job.id) is None

    def test_drops_missing_and_non_pending_entries(self, db, lanes, make_job):
        done = make_job(status=JobStatus.SUCCESS)
        lanes.delayed_add("ghost", 0)
        lanes.delayed_add(done.id, 0)
        assert DelayPromoter(db, lanes).move_due_retries() == []
        assert lanes.pop_highest() is None
        assert lanes.delayed_range(epoch_ms(utcnow())) == []


class TestDelayedSummary:
    def test_lists_pending_jobs_with_time_left(self, db, make_job):
        job = make_job(priority=2, delay_ms=10_000)
        summary = DelayPromoter(db).delayed_summary(now=job.created)
        assert summary == [{"id": job.id, "priority": 2, "ready_in_secs": 10.0}]

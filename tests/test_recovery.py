"""
Tests for startup crash recovery.
"""

from models import ExecutionState, JobStatus, PCBStatus, utcnow
from recovery import RecoveryCoordinator


def _drain(lanes):
    ids = []
    while True:
        hit = lanes.pop_highest()
        if hit is None:
            return ids
        ids.append(hit[1])


class TestRecovery:
    def test_empty_store_is_a_noop(self, db, lanes):
        report = RecoveryCoordinator(db, lanes).recover()
        assert report.requeued == []
        assert report.errors == 0
        assert lanes.pop_highest() is None

    def test_due_pending_jobs_are_requeued(self, db, lanes, make_job):
        due = make_job(priority=4)
        still_delayed = make_job(priority=4, delay_ms=60_000)

        report = RecoveryCoordinator(db, lanes).recover()

        assert report.pending == [due.id]
        assert db.get_job(due.id).status == "READY"
        assert db.get_job(still_delayed.id).status == "PENDING"
        assert _drain(lanes) == [due.id]

    def test_running_jobs_are_reset_and_requeued(self, db, lanes, make_job):
        orphan = make_job(priority=6, status=JobStatus.RUNNING)

        report = RecoveryCoordinator(db, lanes).recover()

        assert report.running == [orphan.id]
        assert db.get_job(orphan.id).status == "READY"
        assert lanes.pop_highest() == (6, orphan.id)

    def test_suspended_jobs_are_requeued_at_stored_priority(self, db, lanes, make_job):
        job = make_job(priority=3, age_secs=30, status=JobStatus.SUSPENDED)
        db.create_pcb(ExecutionState(job_id=job.id, status=PCBStatus.SUSPENDED, execution_time_secs=5,
                                     execution_time_done_secs=2, suspended_at=utcnow().isoformat(),
                                     resume_count=1))

        report = RecoveryCoordinator(db, lanes).recover()

        assert report.suspended == [job.id]
        assert lanes.pop_highest() == (3, job.id)
        pcb = db.get_pcb(job.id)
        assert pcb.status == "READY"
        assert pcb.execution_time_done_secs == 2
        assert db.get_job(job.id).status == "READY"

    def test_second_run_finds_nothing_new(self, db, lanes, make_job):
        make_job(priority=4)
        make_job(priority=6, status=JobStatus.RUNNING)
        suspended = make_job(priority=3, status=JobStatus.SUSPENDED)
        db.create_pcb(ExecutionState(job_id=suspended.id, status=PCBStatus.SUSPENDED))

        coordinator = RecoveryCoordinator(db, lanes)
        first = coordinator.recover()
        queued = sorted(_drain_copy(lanes))
        second = coordinator.recover()

        assert len(first.requeued) == 3
        assert second.requeued == []
        assert sorted(_drain(lanes)) == queued

    def test_orphan_pcb_is_skipped(self, db, lanes):
        db.create_pcb(ExecutionState(job_id="ghost", status=PCBStatus.SUSPENDED))
        report = RecoveryCoordinator(db, lanes).recover()
        assert report.suspended == []
        assert report.errors == 0

    def test_per_record_errors_do_not_abort(self, db, lanes, make_job, monkeypatch):
        bad = make_job(priority=4, status=JobStatus.RUNNING)
        good = make_job(priority=5, status=JobStatus.RUNNING)
        real_push = lanes.push

        def flaky_push(priority, job_id):
            if job_id == bad.id:
                raise RuntimeError("queue unavailable")
            real_push(priority, job_id)

        monkeypatch.setattr(lanes, "push", flaky_push)
        report = RecoveryCoordinator(db, lanes).recover()

        assert report.errors == 1
        assert report.running == [good.id]

    def test_recovery_stats(self, db, make_job):
        make_job()
        make_job(status=JobStatus.SUCCESS)
        db.create_pcb(ExecutionState(job_id="x", status=PCBStatus.SUSPENDED))
        stats = RecoveryCoordinator(db).recovery_stats()
        assert stats["PENDING"] == 1
        assert stats["SUCCESS"] == 1
        assert stats["SUSPENDED_PCBS"] == 1


def _drain_copy(lanes):
    rows = lanes.db.conn.execute("SELECT job_id FROM lane_entries").fetchall()
    return [r["job_id"] for r in rows]

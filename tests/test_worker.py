"""
Tests for the dispatch loop: pickup, outcomes and retry accounting.
"""

import threading
from datetime import timedelta

import pytest

import executor
from executor import ExecutionController
from models import JobStatus, PCBStatus, epoch_ms, utcnow
from promotion import DelayPromoter
from storage import Storage
from tests.conftest import ScriptedOracle
from worker import Worker


@pytest.fixture
def worker_for(db, settings, clock):
    def factory(oracle=None, stop_event=None, storage=None, worker_id="worker-1"):
        storage = storage or db
        stop_event = stop_event or threading.Event()
        controller = ExecutionController(storage, oracle or ScriptedOracle(), settings, worker_id=worker_id,
                                         stop_event=stop_event, sleep=clock.sleep, monotonic=clock.monotonic)
        return Worker(settings, worker_id=worker_id, stop_event=stop_event, db=storage, controller=controller)
    return factory


def _ready(db, lanes, make_job, **kwargs):
    job = make_job(status=JobStatus.READY, **kwargs)
    lanes.push(job.priority, job.id)
    return job


class TestPickup:
    def test_empty_lanes(self, worker_for):
        assert worker_for().run_once() is False

    def test_missing_job_is_skipped(self, worker_for, lanes):
        lanes.push(5, "ghost")
        assert worker_for().run_once() is True
        assert lanes.pop_highest() is None

    def test_stale_entry_for_finished_job_is_skipped(self, db, lanes, make_job, worker_for):
        job = make_job(status=JobStatus.SUCCESS)
        lanes.push(5, job.id)
        assert worker_for().run_once() is True
        assert db.get_job(job.id).status == "SUCCESS"
        assert db.get_pcb(job.id) is None

    def test_pending_job_in_backoff_is_skipped(self, db, lanes, make_job, worker_for):
        job = make_job(next_run_at=(utcnow() + timedelta(seconds=30)).isoformat())
        lanes.push(5, job.id)
        worker_for().run_once()
        assert db.get_job(job.id).status == "PENDING"

    def test_highest_priority_runs_first(self, db, lanes, make_job, worker_for):
        low = _ready(db, lanes, make_job, priority=2)
        high = _ready(db, lanes, make_job, priority=8)
        w = worker_for()
        w.run_once()
        assert db.get_job(high.id).status == "SUCCESS"
        assert db.get_job(low.id).status == "READY"

    def test_duplicate_entries_run_the_job_once(self, db, db_path, lanes, make_job, worker_for, monkeypatch):
        job = _ready(db, lanes, make_job)
        lanes.push(job.priority, job.id)
        calls = []
        monkeypatch.setattr(executor, "run_handler", calls.append)

        other_db = Storage(db_path)
        other = worker_for(storage=other_db, worker_id="worker-2")
        first = worker_for()
        read_job = db.get_job

        def read_then_lose_race(job_id):
            snapshot = read_job(job_id)
            # the second worker claims and finishes the job from its own entry
            assert other.run_once() is True
            monkeypatch.setattr(db, "get_job", read_job)
            return snapshot

        monkeypatch.setattr(db, "get_job", read_then_lose_race)
        try:
            assert first.run_once() is True
        finally:
            other_db.close()

        assert len(calls) == 1
        done = db.get_job(job.id)
        assert done.status == "SUCCESS"
        assert done.worker_id == "worker-2"
        assert lanes.pop_highest() is None


class TestOutcomes:
    def test_success(self, db, lanes, make_job, worker_for):
        job = _ready(db, lanes, make_job)
        w = worker_for()
        assert w.run_once() is True

        done = db.get_job(job.id)
        assert done.status == "SUCCESS"
        assert done.worker_id == "worker-1"
        assert done.started_at and done.finished_at
        assert w.active_job is None

    def test_preemption_is_not_a_failure(self, db, lanes, make_job, worker_for):
        job = _ready(db, lanes, make_job, max_retries=0)
        worker_for(ScriptedOracle(preempt_on={2})).run_once()

        suspended = db.get_job(job.id)
        assert suspended.status == "SUSPENDED"
        assert suspended.retry_count == 0
        assert lanes.delayed_score(job.id) is None
        assert db.get_pcb(job.id).status == PCBStatus.SUSPENDED.value

    def test_failure_schedules_backoff_retry(self, db, lanes, make_job, worker_for):
        job = _ready(db, lanes, make_job, payload={})
        before = epoch_ms(utcnow())
        worker_for().run_once()
        after = epoch_ms(utcnow())

        failed = db.get_job(job.id)
        assert failed.status == "PENDING"
        assert failed.retry_count == 1
        assert failed.last_error == "Missing email recipient"
        score = lanes.delayed_score(job.id)
        assert before + 2_000 <= score <= after + 2_000
        assert failed.next_run_at is not None

    def test_retries_exhaust_into_failed(self, db, lanes, make_job, worker_for):
        job = _ready(db, lanes, make_job, payload={}, max_retries=2)
        w = worker_for()
        promoter = DelayPromoter(db, lanes)
        backoffs = []

        for _ in range(3):
            now = epoch_ms(utcnow())
            w.run_once()
            score = lanes.delayed_score(job.id)
            if score is not None:
                backoffs.append(score - now)
            promoter.move_due_retries(utcnow() + timedelta(seconds=60))

        final = db.get_job(job.id)
        assert final.status == "FAILED"
        assert final.retry_count == 3
        assert lanes.delayed_score(job.id) is None
        assert len(backoffs) == 2
        assert 2_000 <= backoffs[0] < 3_000
        assert 4_000 <= backoffs[1] < 5_000

    def test_shutdown_requeues_as_pending(self, db, lanes, make_job, worker_for):
        job = _ready(db, lanes, make_job, priority=4)
        stop = threading.Event()
        stop.set()
        worker_for(stop_event=stop).run_once()

        assert db.get_job(job.id).status == "PENDING"
        assert lanes.pop_highest() == (4, job.id)

    def test_unexpected_controller_error_counts_as_failure(self, db, lanes, make_job, settings):
        class Exploding:
            def run(self, job, timeout_secs=None):
                raise RuntimeError("store went away")

        job = _ready(db, lanes, make_job)
        Worker(settings, db=db, controller=Exploding()).run_once()

        failed = db.get_job(job.id)
        assert failed.status == "PENDING"
        assert failed.retry_count == 1
        assert "store went away" in failed.last_error


class TestRunLoop:
    def test_run_exits_when_stopped(self, db, lanes, make_job, settings):
        stop = threading.Event()
        w = Worker(settings, stop_event=stop, db=db)
        t = threading.Thread(target=w.run)
        t.start()
        stop.set()
        t.join(timeout=5)
        assert not t.is_alive()

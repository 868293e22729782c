"""
Shared fixtures: a throwaway database per test, a fake clock for the
execution controller, and a job factory.
"""

from datetime import timedelta

import pytest

from config import Settings
from lanes import PriorityLanes
from models import Job, utcnow
from storage import Storage


class FakeClock:
    """Monotonic clock whose sleep() just advances time."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedOracle:
    """Preempts on the given check numbers (1-based)."""

    def __init__(self, preempt_on=()):
        self.preempt_on = set(preempt_on)
        self.checks = 0

    def should_preempt(self, job):
        self.checks += 1
        return self.checks in self.preempt_on


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def db(db_path):
    storage = Storage(db_path)
    yield storage
    storage.close()


@pytest.fixture
def lanes(db):
    return PriorityLanes(db)


@pytest.fixture
def settings(db_path):
    return Settings(
        db_path=db_path,
        job_timeout_secs=60,
        poll_interval=0.05,
        aging_interval=0.05,
        resume_interval=0.05,
        promotion_interval=0.05,
        slice_ms=100,
        checkpoint_ms=500,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_job(db):
    def factory(age_secs=0, **kwargs):
        kwargs.setdefault("type", "EMAIL")
        kwargs.setdefault("payload", {"to": "ops@example.com"})
        kwargs.setdefault("execution_time_secs", 1)
        job = Job(**kwargs)
        if age_secs:
            job.created_at = (utcnow() - timedelta(seconds=age_secs)).isoformat()
        return db.create_job(job)
    return factory

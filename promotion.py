# promotion.py
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from lanes import PriorityLanes
from logs import log_transition
from models import Job, JobStatus, epoch_ms, from_iso, utcnow
from storage import Storage

logger = logging.getLogger(__name__)


def ready_at(job: Job) -> datetime:
    """Earliest moment the job may enter a lane: its creation delay, or a pending retry, whichever is later."""
    at = job.created + timedelta(milliseconds=job.delay_ms or 0)
    retry_at = from_iso(job.next_run_at)
    if retry_at and retry_at > at:
        at = retry_at
    return at


def is_due(job: Job, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) >= ready_at(job)


def time_until_ready(job: Job, now: Optional[datetime] = None) -> float:
    """Seconds left before the job is due, 0 when it already is."""
    return max(0.0, (ready_at(job) - (now or utcnow())).total_seconds())


class DelayPromoter:
    """Moves PENDING jobs into their priority lane once they are due."""

    def __init__(self, db: Storage, lanes: Optional[PriorityLanes] = None):
        self.db = db
        self.lanes = lanes or PriorityLanes(db)

    def promote_ready_jobs(self, now: Optional[datetime] = None) -> List[str]:
        now = now or utcnow()
        promoted = []
        for job in list(self.db.iter_jobs_by_status(JobStatus.PENDING)):
            if not is_due(job, now):
                continue
            # another loop may have promoted it since the scan was read
            current = self.db.get_job(job.id)
            if current is None or current.status != JobStatus.PENDING.value:
                continue
            if self._promote(current, "delay expired", waited_ms=epoch_ms(now) - epoch_ms(current.created)):
                promoted.append(current.id)
        return promoted

    def move_due_retries(self, now: Optional[datetime] = None) -> List[str]:
        """Drain the delayed set of retries whose backoff has elapsed."""
        now = now or utcnow()
        moved = []
        for job_id in self.lanes.delayed_pop_ready(epoch_ms(now)):
            job = self.db.get_job(job_id)
            if job is None:
                logger.warning(f"Delayed entry {job_id} has no job, dropping it")
                continue
            if job.status != JobStatus.PENDING.value:
                continue
            if self._promote(job, "retry due"):
                moved.append(job.id)
        return moved

    def delayed_summary(self, now: Optional[datetime] = None, limit=20) -> List[dict]:
        now = now or utcnow()
        return [
            {"id": job.id, "priority": job.priority, "ready_in_secs": round(time_until_ready(job, now), 1)}
            for job in self.db.find_jobs_by_status(JobStatus.PENDING, limit=limit)
        ]

    def _promote(self, job: Job, reason, waited_ms=None) -> bool:
        # best-effort de-duplication only; the dispatch loop re-checks status on pickup
        already_queued = self.lanes.contains(job.priority, job.id)
        if not already_queued:
            self.lanes.push(job.priority, job.id)
        # a worker may already have popped and claimed it
        if not self.db.transition(job.id, JobStatus.PENDING, JobStatus.READY, next_run_at=None):
            return not already_queued
        waited = f", waited {waited_ms}ms" if waited_ms is not None else ""
        log_transition(logger, job.id, JobStatus.PENDING, JobStatus.READY,
                       f"({reason}{waited}, lane {job.priority})")
        return not already_queued

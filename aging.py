# aging.py
import logging
from datetime import datetime
from typing import Optional

from lanes import PriorityLanes
from logs import log_transition
from models import MAX_PRIORITY, Job, JobStatus, PCBStatus, utcnow
from storage import Storage

logger = logging.getLogger(__name__)


def job_age(job: Job, now: Optional[datetime] = None) -> int:
    """Whole seconds since the job was created."""
    now = now or utcnow()
    return max(0, int((now - job.created).total_seconds()))


def effective_priority(job: Job, now: Optional[datetime] = None) -> int:
    return min(job.priority + job_age(job, now), MAX_PRIORITY)


class AgingEngine:
    """Starvation avoidance for waiting jobs, and re-enqueueing of preempted ones."""

    def __init__(self, db: Storage, lanes: Optional[PriorityLanes] = None):
        self.db = db
        self.lanes = lanes or PriorityLanes(db)

    def age_jobs(self, now: Optional[datetime] = None) -> int:
        # PENDING jobs are blocked on a delay, not starved; RUNNING jobs are being served
        now = now or utcnow()
        boosted = 0
        for job in self.db.iter_jobs_by_status([JobStatus.READY, JobStatus.SUSPENDED]):
            if self._boost(job, now):
                boosted += 1
        return boosted

    def resume_suspended(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        resumed = 0
        for pcb in self.db.find_pcbs_by_status(PCBStatus.SUSPENDED):
            job = self.db.get_job(pcb.job_id)
            if job is None:
                logger.warning(f"Suspended PCB {pcb.job_id} has no job, skipping")
                continue
            if job.status != JobStatus.SUSPENDED.value:
                logger.debug(f"Job {job.id} is {job.status}, not re-queuing")
                continue

            self._boost(job, now, saved=False)
            # Push before flipping statuses: a crash in between leaves a SUSPENDED
            # job in a lane, which the dispatch loop still accepts.
            self.lanes.push(job.priority, job.id)
            self.db.transition_pcb(pcb.job_id, PCBStatus.SUSPENDED, PCBStatus.READY)
            if not self.db.transition(job.id, JobStatus.SUSPENDED, JobStatus.READY, priority=job.priority):
                continue
            resumed += 1
            log_transition(logger, job.id, JobStatus.SUSPENDED, JobStatus.READY,
                           f"(re-queued at priority {job.priority}, resume attempt {pcb.resume_count + 1})")
        return resumed

    def _boost(self, job: Job, now, saved=True) -> bool:
        new_priority = effective_priority(job, now)
        if new_priority <= job.priority:
            return False
        old_priority = job.priority
        # only the priority changes, and only if no one moved the job since it was read
        if saved and not self.db.transition(job.id, job.status, job.status, priority=new_priority):
            logger.debug(f"Job {job.id} changed since it was scanned, not aging it")
            return False
        job.priority = new_priority
        logger.info(f"[Aging] [{job.status}] Job {job.id}: priority boosted {old_priority} → {new_priority} "
                    f"(aged {job_age(job, now)}s)")
        return True

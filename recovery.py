# recovery.py
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from lanes import PriorityLanes
from logs import log_transition
from models import JobStatus, PCBStatus, utcnow
from promotion import is_due
from storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    pending: List[str] = field(default_factory=list)
    running: List[str] = field(default_factory=list)
    suspended: List[str] = field(default_factory=list)
    errors: int = 0

    @property
    def requeued(self) -> List[str]:
        return self.pending + self.running + self.suspended


class RecoveryCoordinator:
    """Startup repair of state left behind by a crashed worker.

    Must run before any dispatch loop starts. Each scan is independent and a
    failing record is logged and skipped, never aborting the boot.
    """

    def __init__(self, db: Storage, lanes: Optional[PriorityLanes] = None):
        self.db = db
        self.lanes = lanes or PriorityLanes(db)

    def recover(self, now: Optional[datetime] = None) -> RecoveryReport:
        now = now or utcnow()
        report = RecoveryReport()
        logger.info("[Recovery] Starting job recovery...")
        self._recover_pending(report, now)
        self._recover_running(report)
        self._recover_suspended(report)
        logger.info(f"[Recovery] Recovery complete! Re-queued {len(report.requeued)} jobs "
                    f"({len(report.pending)} pending, {len(report.running)} running, "
                    f"{len(report.suspended)} suspended, {report.errors} errors)")
        return report

    def _recover_pending(self, report, now):
        jobs = self.db.find_jobs_by_status(JobStatus.PENDING)
        logger.info(f"[Recovery] Found {len(jobs)} PENDING jobs")
        for job in jobs:
            # jobs still inside their delay or backoff window stay with the promotion loop
            if not is_due(job, now):
                continue
            try:
                self.lanes.push(job.priority, job.id)
                self.db.transition(job.id, JobStatus.PENDING, JobStatus.READY, next_run_at=None)
                report.pending.append(job.id)
                log_transition(logger, job.id, JobStatus.PENDING, JobStatus.READY,
                               f"(recovered, lane {job.priority})")
            except Exception:
                report.errors += 1
                logger.exception(f"[Recovery] Could not re-queue PENDING job {job.id}")

    def _recover_running(self, report):
        jobs = self.db.find_jobs_by_status(JobStatus.RUNNING)
        logger.info(f"[Recovery] Found {len(jobs)} RUNNING jobs (interrupted)")
        for job in jobs:
            try:
                self.db.transition(job.id, JobStatus.RUNNING, JobStatus.PENDING)
                log_transition(logger, job.id, JobStatus.RUNNING, JobStatus.PENDING, "(orphaned by crash)")
                self.lanes.push(job.priority, job.id)
                self.db.transition(job.id, JobStatus.PENDING, JobStatus.READY)
                report.running.append(job.id)
                log_transition(logger, job.id, JobStatus.PENDING, JobStatus.READY,
                               f"(recovered, lane {job.priority})")
            except Exception:
                report.errors += 1
                logger.exception(f"[Recovery] Could not reset RUNNING job {job.id}")

    def _recover_suspended(self, report):
        pcbs = self.db.find_pcbs_by_status(PCBStatus.SUSPENDED)
        logger.info(f"[Recovery] Found {len(pcbs)} SUSPENDED jobs")
        for pcb in pcbs:
            try:
                job = self.db.get_job(pcb.job_id)
                if job is None:
                    logger.warning(f"[Recovery] Suspended PCB {pcb.job_id} has no job, skipping")
                    continue
                # stored priority as-is; the aging loop catches up once running
                self.lanes.push(job.priority, job.id)
                self.db.transition_pcb(pcb.job_id, PCBStatus.SUSPENDED, PCBStatus.READY)
                self.db.transition(job.id, JobStatus.SUSPENDED, JobStatus.READY)
                report.suspended.append(job.id)
                logger.info(f"[Recovery] Re-queued SUSPENDED job {job.id} (priority {job.priority}, "
                            f"resume count {pcb.resume_count})")
            except Exception:
                report.errors += 1
                logger.exception(f"[Recovery] Could not re-queue SUSPENDED job {pcb.job_id}")

    def recovery_stats(self) -> dict:
        counts = self.db.count_by_status()
        counts["SUSPENDED_PCBS"] = self.db.count_pcbs_by_status(PCBStatus.SUSPENDED)
        return counts

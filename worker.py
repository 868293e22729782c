# worker.py
import logging
import threading
import time
import uuid
from datetime import timedelta
from typing import Optional

from config import Settings
from executor import ExecutionController, PreemptionOracle
from lanes import PriorityLanes
from logs import log_transition
from models import Job, JobStatus, OutcomeKind, epoch_ms, utcnow
from promotion import is_due
from storage import Storage

logger = logging.getLogger(__name__)


class Worker:
    """One dispatch loop: pop the highest-priority job, run it, record the outcome."""

    def __init__(self, settings: Settings, worker_id=None, stop_event=None, db=None, controller=None):
        self.settings = settings
        self.db = db or Storage(settings.db_path)
        self.lanes = PriorityLanes(self.db)
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.stop_event = stop_event or threading.Event()
        self.controller = controller or ExecutionController(
            self.db, PreemptionOracle(self.lanes), settings,
            worker_id=self.worker_id, stop_event=self.stop_event,
        )
        self.active_job: Optional[Job] = None

    def run(self):
        logger.info(f"{self.worker_id} started")
        while not self.stop_event.is_set():
            try:
                processed = self.run_once()
            except Exception:
                logger.exception(f"{self.worker_id}: dispatch iteration failed")
                processed = False
            if not processed:
                self.stop_event.wait(self.settings.poll_interval)
        logger.info(f"{self.worker_id} stopped")

    def run_once(self) -> bool:
        """One dispatch cycle. Returns False when every lane was empty."""
        hit = self.lanes.pop_highest()
        if hit is None:
            return False
        priority, job_id = hit

        job = self.db.get_job(job_id)
        if job is None:
            logger.warning(f"[{self.worker_id}] Job not found, skipping: {job_id}")
            return True
        if not self._dispatchable(job):
            logger.info(f"[{self.worker_id}] Skipping stale entry for job {job_id} ({job.status})")
            return True

        old_status = job.status
        # a duplicate lane entry may have been claimed by another worker since the read
        if not self.db.transition(job.id, old_status, JobStatus.RUNNING, worker_id=self.worker_id,
                                  started_at=job.started_at or utcnow().isoformat()):
            logger.info(f"[{self.worker_id}] Job {job_id} was claimed elsewhere, skipping")
            return True
        job = self.db.get_job(job_id)
        logger.info(f"[{self.worker_id}] Picked job {job_id} (lane {priority}, {job.type})")
        log_transition(logger, job.id, old_status, JobStatus.RUNNING, f"(claimed by {self.worker_id})")

        self.active_job = job
        try:
            self._process_job(job)
        finally:
            self.active_job = None
        return True

    def _dispatchable(self, job: Job) -> bool:
        if job.status in (JobStatus.READY.value, JobStatus.SUSPENDED.value):
            return True
        # PENDING entries come from recovery and shutdown re-queues
        return job.status == JobStatus.PENDING.value and is_due(job)

    def _process_job(self, job: Job):
        start = time.monotonic()
        try:
            outcome = self.controller.run(job, timeout_secs=self.settings.job_timeout_secs)
        except Exception as e:
            logger.exception(f"Execution of job {job.id} raised")
            self._handle_failure(job, f"{type(e).__name__}: {e}")
            return
        duration = time.monotonic() - start

        if outcome.kind == OutcomeKind.COMPLETED:
            job.status = JobStatus.SUCCESS.value
            job.finished_at = utcnow().isoformat()
            job.last_error = None
            self.db.save_job(job)
            log_transition(logger, job.id, JobStatus.RUNNING, JobStatus.SUCCESS, f"(duration={duration:.3f}s)")
        elif outcome.kind == OutcomeKind.PREEMPTED:
            # already SUSPENDED with its checkpoint; the resumption scan re-queues it
            log_transition(logger, job.id, JobStatus.RUNNING, JobStatus.SUSPENDED, "(preempted, will resume later)")
        elif outcome.kind == OutcomeKind.INTERRUPTED:
            self.requeue(job, "(worker shutting down)")
        else:
            self._handle_failure(job, outcome.reason)

    def _handle_failure(self, job: Job, error):
        job.retry_count += 1
        job.last_error = error
        if job.retry_count <= job.max_retries:
            delay = self.settings.backoff_base ** job.retry_count
            retry_at = utcnow() + timedelta(seconds=delay)
            self.lanes.delayed_add(job.id, epoch_ms(retry_at))
            job.status = JobStatus.PENDING.value
            job.next_run_at = retry_at.isoformat()
            self.db.save_job(job)
            log_transition(logger, job.id, JobStatus.RUNNING, JobStatus.PENDING,
                           f"(retry {job.retry_count}/{job.max_retries} in {delay}s, error={error})")
        else:
            job.status = JobStatus.FAILED.value
            job.finished_at = utcnow().isoformat()
            self.db.save_job(job)
            log_transition(logger, job.id, JobStatus.RUNNING, JobStatus.FAILED,
                           f"(retries exhausted {job.retry_count}/{job.max_retries}, error={error})")

    def requeue(self, job: Job, extra=""):
        """Put a job this worker owns back to PENDING and onto its lane."""
        job.status = JobStatus.PENDING.value
        self.db.save_job(job)
        self.lanes.push(job.priority, job.id)
        log_transition(logger, job.id, JobStatus.RUNNING, JobStatus.PENDING, extra)

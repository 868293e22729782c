# executor.py
import logging
import time
from datetime import timedelta
from typing import Callable, Optional

from aging import effective_priority
from config import Settings
from handlers import run_handler
from lanes import PriorityLanes
from models import (ExecutionState, HandlerError, Job, JobStatus, JobType, Outcome,
                    PCBStatus, utcnow)
from storage import Storage

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "Job execution timeout"


class PreemptionOracle:
    """Decides whether a running job should yield to a waiting one.

    Advisory only: the waiting job may be taken by another worker before this
    one yields. A spurious preemption just sends the job back to its lane.
    """

    def __init__(self, lanes: PriorityLanes, clock: Callable = utcnow):
        self.lanes = lanes
        self.clock = clock

    def should_preempt(self, job: Job) -> bool:
        current = effective_priority(job, self.clock())
        waiting = self.lanes.highest_waiting()
        if waiting > current:
            logger.info(f"[Preemption] Job {job.id} effective priority {current}, "
                        f"highest waiting {waiting} → PREEMPT")
            return True
        return False


class ExecutionController:
    """Runs one job in small time slices, checkpointing into its PCB.

    The optional delay phase (DELAY jobs with ``payload["delay_ms"]``) runs
    first and is not subject to the timeout; the work phase runs for
    ``execution_time_secs`` and then hands the job to its payload handler.
    """

    def __init__(self, db: Storage, oracle: PreemptionOracle, settings: Optional[Settings] = None,
                 worker_id=None, stop_event=None, sleep=time.sleep, monotonic=time.monotonic):
        settings = settings or Settings(db_path=db.db_path)
        self.db = db
        self.oracle = oracle
        self.worker_id = worker_id
        self.stop_event = stop_event
        self.slice_ms = settings.slice_ms
        self.checkpoint_ms = settings.checkpoint_ms
        self.sleep = sleep
        self.monotonic = monotonic

    def run(self, job: Job, timeout_secs: Optional[float] = None) -> Outcome:
        pcb = self._load_pcb(job)
        pcb.status = PCBStatus.RUNNING.value
        pcb.worker_id = self.worker_id
        self.db.save_pcb(pcb)

        if pcb.remaining_delay_ms > 0:
            logger.info(f"[Delay Phase] Job {job.id}: total {pcb.total_delay_ms}ms, "
                        f"done {pcb.delayed_so_far_ms}ms, remaining {pcb.remaining_delay_ms}ms")
            outcome = self._run_slices(job, pcb, pcb.remaining_delay_ms, _advance_delay)
            if outcome:
                return outcome

        deadline = self.monotonic() + timeout_secs if timeout_secs else None
        logger.info(f"[Execution Phase] Job {job.id}: needed {pcb.execution_time_secs}s, "
                    f"done {pcb.execution_time_done_secs}s, remaining {pcb.remaining_secs}s")
        outcome = self._run_slices(job, pcb, round(pcb.remaining_secs * 1000), _advance_work, deadline)
        if outcome:
            return outcome

        try:
            run_handler(job)
        except HandlerError as e:
            return self._fail(pcb, str(e))
        except Exception as e:
            logger.exception(f"Handler for job {job.id} raised")
            return self._fail(pcb, f"{type(e).__name__}: {e}")
        if deadline is not None and self.monotonic() > deadline:
            return self._fail(pcb, TIMEOUT_REASON)

        pcb.status = PCBStatus.COMPLETED.value
        pcb.execution_time_done_secs = pcb.execution_time_secs
        pcb.delayed_so_far_ms = pcb.total_delay_ms
        pcb.elapsed_time = _elapsed_ms(pcb)
        self.db.save_pcb(pcb)
        logger.info(f"[Execution Complete] Job {job.id} (resumes: {pcb.resume_count})")
        return Outcome.completed()

    def _load_pcb(self, job: Job) -> ExecutionState:
        pcb = self.db.get_pcb(job.id)
        if pcb is None:
            now = utcnow()
            total_delay_ms = 0
            if job.type == JobType.DELAY.value:
                total_delay_ms = int(job.payload.get("delay_ms") or 0)
            expected = total_delay_ms + round(job.execution_time_secs * 1000)
            return self.db.create_pcb(ExecutionState(
                job_id=job.id,
                status=PCBStatus.RUNNING,
                start_time=now.isoformat(),
                expected_duration=expected,
                deadline_time=(now + timedelta(milliseconds=expected)).isoformat(),
                execution_time_secs=job.execution_time_secs,
                total_delay_ms=total_delay_ms,
            ))

        if pcb.status == PCBStatus.SUSPENDED.value or pcb.suspended_at:
            pcb.resume_count += 1
            pcb.suspended_at = None
            logger.info(f"[PCB] Resuming job {job.id} (resume count {pcb.resume_count}, "
                        f"already executed {pcb.execution_time_done_secs}s)")
        else:
            logger.info(f"[PCB] Continuing job {job.id} from checkpoint ({pcb.status}, "
                        f"{pcb.execution_time_done_secs}s done)")
        return pcb

    def _run_slices(self, job, pcb, remaining_ms, advance, deadline=None) -> Optional[Outcome]:
        since_checkpoint = 0
        while remaining_ms > 0:
            if deadline is not None and self.monotonic() >= deadline:
                return self._fail(pcb, TIMEOUT_REASON)

            started = self.monotonic()
            self.sleep(min(self.slice_ms, remaining_ms) / 1000)
            # never credit more work than is left
            elapsed = min(remaining_ms, max(0, round((self.monotonic() - started) * 1000)))
            advance(pcb, elapsed)
            remaining_ms -= elapsed
            since_checkpoint += elapsed
            if remaining_ms <= 0:
                break

            if self.stop_event is not None and self.stop_event.is_set():
                return self._interrupt(pcb)
            if self.oracle.should_preempt(job):
                return self._suspend(job, pcb)
            if since_checkpoint >= self.checkpoint_ms:
                self.db.save_pcb(pcb)
                since_checkpoint = 0
        return None

    def _suspend(self, job: Job, pcb: ExecutionState) -> Outcome:
        pcb.status = PCBStatus.SUSPENDED.value
        pcb.suspended_at = utcnow().isoformat()
        self.db.save_pcb(pcb)
        job.status = JobStatus.SUSPENDED.value
        self.db.save_job(job)
        logger.info(f"[PREEMPTED] Job {job.id} suspended after {pcb.execution_time_done_secs}s of "
                    f"{pcb.execution_time_secs}s")
        return Outcome.preempted()

    def _interrupt(self, pcb: ExecutionState) -> Outcome:
        pcb.status = PCBStatus.READY.value
        self.db.save_pcb(pcb)
        logger.info(f"[PCB] Job {pcb.job_id} interrupted by shutdown at {pcb.execution_time_done_secs}s")
        return Outcome.interrupted()

    def _fail(self, pcb: ExecutionState, reason) -> Outcome:
        pcb.status = PCBStatus.READY.value
        self.db.save_pcb(pcb)
        return Outcome.failed(reason)


def _elapsed_ms(pcb):
    return pcb.delayed_so_far_ms + round(pcb.execution_time_done_secs * 1000)


def _advance_delay(pcb, ms):
    pcb.delayed_so_far_ms = min(pcb.total_delay_ms, pcb.delayed_so_far_ms + ms)
    pcb.elapsed_time = _elapsed_ms(pcb)


def _advance_work(pcb, ms):
    done_ms = round(pcb.execution_time_done_secs * 1000) + ms
    pcb.execution_time_done_secs = min(pcb.execution_time_secs, done_ms / 1000)
    pcb.elapsed_time = _elapsed_ms(pcb)

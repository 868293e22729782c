# scheduler.py
import logging
import threading
from typing import Callable, List, Optional

from aging import AgingEngine
from config import Settings
from lanes import PriorityLanes
from logs import log_transition
from models import JobStatus
from promotion import DelayPromoter
from recovery import RecoveryCoordinator, RecoveryReport
from storage import Storage
from worker import Worker

logger = logging.getLogger(__name__)


class PollingLoop:
    """Runs ``tick`` every ``interval`` seconds until the stop event is set.

    Each loop owns its own connection and talks to the other loops only
    through the database.
    """

    def __init__(self, name, interval, tick: Callable[[], object], stop_event: threading.Event):
        self.name = name
        self.interval = interval
        self.tick = tick
        self.stop_event = stop_event

    def run(self):
        while not self.stop_event.is_set():
            try:
                self.tick()
            except Exception:
                # store hiccups are retried on the next tick
                logger.exception(f"{self.name} tick failed")
            self.stop_event.wait(self.interval)


class Scheduler:
    """Recovery once, then N dispatch loops and the background loops, all as threads."""

    def __init__(self, settings: Settings, workers=1, stop_event=None):
        self.settings = settings
        self.worker_count = workers
        self.stop_event = stop_event or threading.Event()
        self.workers: List[Worker] = []
        self.threads: List[threading.Thread] = []
        self.recovery_report: Optional[RecoveryReport] = None

    def start(self):
        db = Storage(self.settings.db_path)
        try:
            self.recovery_report = RecoveryCoordinator(db).recover()
        finally:
            db.close()

        for i in range(self.worker_count):
            w = Worker(self.settings, worker_id=f"worker-{i + 1}", stop_event=self.stop_event)
            self.workers.append(w)
            self._spawn(w.worker_id, w.run)

        aging = AgingEngine(Storage(self.settings.db_path))
        resumer = AgingEngine(Storage(self.settings.db_path))
        promoter = DelayPromoter(Storage(self.settings.db_path))
        loops = [
            PollingLoop("aging", self.settings.aging_interval, aging.age_jobs, self.stop_event),
            PollingLoop("resumption", self.settings.resume_interval, resumer.resume_suspended, self.stop_event),
            PollingLoop("promotion", self.settings.promotion_interval,
                        lambda: (promoter.move_due_retries(), promoter.promote_ready_jobs()), self.stop_event),
        ]
        for loop in loops:
            self._spawn(loop.name, loop.run)
        logger.info(f"Scheduler started with {self.worker_count} worker(s) on {self.settings.db_path}")

    def _spawn(self, name, target):
        t = threading.Thread(target=target, name=name, daemon=True)
        self.threads.append(t)
        t.start()

    def stop(self, timeout=5.0):
        """Signal every loop, wait for them, and hand back any job a worker still holds."""
        self.stop_event.set()
        for t in self.threads:
            t.join(timeout=timeout)
        held = []
        for w in self.workers:
            job = w.active_job
            if job is not None:
                held.append((w.worker_id, job))
        if held:
            self._force_requeue(held)
        logger.info("Scheduler stopped")

    def wait(self, poll=0.5):
        while not self.stop_event.wait(poll):
            pass

    def _force_requeue(self, held):
        # the worker threads may still be alive; only take back jobs still RUNNING
        db = Storage(self.settings.db_path)
        try:
            lanes = PriorityLanes(db)
            for worker_id, job in held:
                logger.warning(f"{worker_id} still holds job {job.id} after shutdown timeout")
                if not db.transition(job.id, JobStatus.RUNNING, JobStatus.PENDING):
                    logger.info(f"Job {job.id} left RUNNING before it could be forced back")
                    continue
                lanes.push(job.priority, job.id)
                log_transition(logger, job.id, JobStatus.RUNNING, JobStatus.PENDING, "(forced back on shutdown)")
        finally:
            db.close()

# storage.py
import sqlite3
from contextlib import contextmanager
from typing import Iterable, List, Optional

from models import ExecutionState, Job, JobStatus, utcnow

JOB_COLUMNS = (
    "id", "type", "payload", "status", "priority", "retry_count", "max_retries",
    "execution_time_secs", "delay_ms", "last_error", "worker_id", "next_run_at",
    "started_at", "finished_at", "created_at", "updated_at",
)

PCB_COLUMNS = (
    "job_id", "status", "worker_id", "start_time", "elapsed_time", "expected_duration",
    "deadline_time", "execution_time_secs", "execution_time_done_secs", "total_delay_ms",
    "delayed_so_far_ms", "suspended_at", "resume_count", "created_at", "updated_at",
)


class Storage:
    def __init__(self, db_path="queue.db"):
        self.db_path = db_path
        # Autocommit; multi-statement operations open their own BEGIN IMMEDIATE.
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None, timeout=30)
        self.conn.row_factory = sqlite3.Row

        # Better concurrency for multiple workers
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def close(self):
        self.conn.close()

    @contextmanager
    def transaction(self):
        """Write-locked transaction; no other connection can write until it ends."""
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def _init_schema(self):
        # Jobs table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            payload TEXT NOT NULL DEFAULT '{}',
            status TEXT NOT NULL,
            priority INTEGER NOT NULL DEFAULT 5,
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            execution_time_secs REAL NOT NULL DEFAULT 10,
            delay_ms INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            worker_id TEXT,
            next_run_at TEXT,
            started_at TEXT,
            finished_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status, created_at)")

        # Execution state (PCB) table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS pcbs (
            job_id TEXT PRIMARY KEY REFERENCES jobs(id),
            status TEXT NOT NULL,
            worker_id TEXT,
            start_time TEXT,
            elapsed_time INTEGER NOT NULL DEFAULT 0,
            expected_duration INTEGER NOT NULL DEFAULT 0,
            deadline_time TEXT,
            execution_time_secs REAL NOT NULL DEFAULT 0,
            execution_time_done_secs REAL NOT NULL DEFAULT 0,
            total_delay_ms INTEGER NOT NULL DEFAULT 0,
            delayed_so_far_ms INTEGER NOT NULL DEFAULT 0,
            suspended_at TEXT,
            resume_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        # Priority lanes: one FIFO per priority, ordered by seq
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS lane_entries (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            priority INTEGER NOT NULL,
            job_id TEXT NOT NULL
        )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_lane_priority ON lane_entries (priority, seq)")

        # Delayed set, scored by ready time in epoch ms
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS delayed_jobs (
            job_id TEXT PRIMARY KEY,
            ready_at_ms INTEGER NOT NULL
        )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_delayed_ready ON delayed_jobs (ready_at_ms)")

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

    # ---------------- Job store ----------------
    def create_job(self, job: Job) -> Job:
        row = job.to_row()
        self.conn.execute(
            f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({', '.join('?' for _ in JOB_COLUMNS)})",
            tuple(row[c] for c in JOB_COLUMNS),
        )
        return job

    def get_job(self, job_id) -> Optional[Job]:
        cur = self.conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,))
        row = cur.fetchone()
        return Job.from_row(row) if row else None

    def save_job(self, job: Job) -> Job:
        """Full-record upsert."""
        job.updated_at = utcnow().isoformat()
        row = job.to_row()
        updates = ", ".join(f"{c}=excluded.{c}" for c in JOB_COLUMNS if c != "id")
        self.conn.execute(
            f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({', '.join('?' for _ in JOB_COLUMNS)}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            tuple(row[c] for c in JOB_COLUMNS),
        )
        return job

    def transition(self, job_id, from_status, to_status, **changes) -> bool:
        """Compare-and-set a job's status; False when it is no longer ``from_status``."""
        changes["status"] = _status_values(to_status)[0]
        changes["updated_at"] = utcnow().isoformat()
        unknown = set(changes) - set(JOB_COLUMNS)
        if unknown:
            raise KeyError(f"unknown job columns: {sorted(unknown)}")
        assignments = ", ".join(f"{c}=?" for c in changes)
        updated = self.conn.execute(
            f"UPDATE jobs SET {assignments} WHERE id=? AND status=?",
            (*changes.values(), job_id, _status_values(from_status)[0]),
        ).rowcount
        return updated == 1

    def find_jobs_by_status(self, statuses, limit=None, offset=0) -> List[Job]:
        statuses = _status_values(statuses)
        sql = f"SELECT * FROM jobs WHERE status IN ({', '.join('?' for _ in statuses)}) ORDER BY created_at, id"
        params = list(statuses)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        return [Job.from_row(r) for r in self.conn.execute(sql, params).fetchall()]

    def iter_jobs_by_status(self, statuses, page_size=200):
        """Page through matching jobs. Rows whose status changes mid-scan may be skipped or seen twice."""
        offset = 0
        while True:
            page = self.find_jobs_by_status(statuses, limit=page_size, offset=offset)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def count_by_status(self) -> dict:
        counts = {s.value: 0 for s in JobStatus}
        for row in self.conn.execute("SELECT status, COUNT(*) AS c FROM jobs GROUP BY status"):
            counts[row["status"]] = row["c"]
        return counts

    def list_recent_jobs(self, limit=50, status=None) -> List[Job]:
        if status:
            cur = self.conn.execute(
                "SELECT * FROM jobs WHERE status=? ORDER BY created_at DESC LIMIT ?", (status, limit))
        else:
            cur = self.conn.execute("SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,))
        return [Job.from_row(r) for r in cur.fetchall()]

    # ---------------- Execution state store ----------------
    def get_pcb(self, job_id) -> Optional[ExecutionState]:
        row = self.conn.execute("SELECT * FROM pcbs WHERE job_id=?", (job_id,)).fetchone()
        return ExecutionState.from_row(row) if row else None

    def create_pcb(self, pcb: ExecutionState) -> ExecutionState:
        row = pcb.to_row()
        self.conn.execute(
            f"INSERT INTO pcbs ({', '.join(PCB_COLUMNS)}) VALUES ({', '.join('?' for _ in PCB_COLUMNS)})",
            tuple(row[c] for c in PCB_COLUMNS),
        )
        return pcb

    def save_pcb(self, pcb: ExecutionState) -> ExecutionState:
        pcb.updated_at = utcnow().isoformat()
        row = pcb.to_row()
        updates = ", ".join(f"{c}=excluded.{c}" for c in PCB_COLUMNS if c != "job_id")
        self.conn.execute(
            f"INSERT INTO pcbs ({', '.join(PCB_COLUMNS)}) VALUES ({', '.join('?' for _ in PCB_COLUMNS)}) "
            f"ON CONFLICT(job_id) DO UPDATE SET {updates}",
            tuple(row[c] for c in PCB_COLUMNS),
        )
        return pcb

    def transition_pcb(self, job_id, from_status, to_status) -> bool:
        updated = self.conn.execute(
            "UPDATE pcbs SET status=?, updated_at=? WHERE job_id=? AND status=?",
            (_status_values(to_status)[0], utcnow().isoformat(), job_id, _status_values(from_status)[0]),
        ).rowcount
        return updated == 1

    def find_pcbs_by_status(self, statuses) -> List[ExecutionState]:
        statuses = _status_values(statuses)
        cur = self.conn.execute(
            f"SELECT * FROM pcbs WHERE status IN ({', '.join('?' for _ in statuses)}) ORDER BY updated_at",
            statuses,
        )
        return [ExecutionState.from_row(r) for r in cur.fetchall()]

    def count_pcbs_by_status(self, status) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS c FROM pcbs WHERE status=?", (_status_values(status)[0],)).fetchone()
        return row["c"]

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM config WHERE key=?", (key,))
        row = cur.fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = utcnow().isoformat()
        self.conn.execute("""
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), now))

    def list_config(self):
        return self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()


def _status_values(statuses) -> list:
    if isinstance(statuses, (str, JobStatus)) or not isinstance(statuses, Iterable):
        statuses = [statuses]
    return [getattr(s, "value", s) for s in statuses]

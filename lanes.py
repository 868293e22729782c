# lanes.py
from typing import Dict, List, Optional, Tuple

from models import MAX_PRIORITY, MIN_PRIORITY
from storage import Storage

LANES = range(MAX_PRIORITY, MIN_PRIORITY - 1, -1)  # scan order, 10 first


class PriorityLanes:
    """Ten FIFO lanes plus a delayed set, kept in the shared SQLite database.

    ``pop_highest`` and ``delayed_pop_ready`` run inside BEGIN IMMEDIATE, so a
    job id is handed to exactly one caller even across worker processes. That
    atomic remove is the only synchronization the scheduler relies on.
    """

    def __init__(self, db: Storage):
        self.db = db

    # ---------------- Lanes ----------------
    def push(self, priority: int, job_id: str):
        _check_priority(priority)
        self.db.conn.execute("INSERT INTO lane_entries (priority, job_id) VALUES (?, ?)", (priority, job_id))

    def pop_highest(self) -> Optional[Tuple[int, str]]:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT seq, priority, job_id FROM lane_entries ORDER BY priority DESC, seq ASC LIMIT 1"
            ).fetchone()
            if not row:
                return None
            conn.execute("DELETE FROM lane_entries WHERE seq=?", (row["seq"],))
        return row["priority"], row["job_id"]

    def length(self, priority: int) -> int:
        row = self.db.conn.execute("SELECT COUNT(*) AS c FROM lane_entries WHERE priority=?", (priority,)).fetchone()
        return row["c"]

    def highest_waiting(self) -> int:
        """Highest priority with at least one queued job, or 0 when every lane is empty."""
        for priority in LANES:
            if self.length(priority) > 0:
                return priority
        return 0

    def contains(self, priority: int, job_id: str) -> bool:
        row = self.db.conn.execute(
            "SELECT 1 FROM lane_entries WHERE priority=? AND job_id=? LIMIT 1", (priority, job_id)
        ).fetchone()
        return row is not None

    def lane_lengths(self) -> Dict[int, int]:
        counts = {p: 0 for p in LANES}
        for row in self.db.conn.execute("SELECT priority, COUNT(*) AS c FROM lane_entries GROUP BY priority"):
            counts[row["priority"]] = row["c"]
        return counts

    # ---------------- Delayed set ----------------
    def delayed_add(self, job_id: str, ready_at_ms: int):
        self.db.conn.execute("""
            INSERT INTO delayed_jobs (job_id, ready_at_ms) VALUES (?, ?)
            ON CONFLICT(job_id) DO UPDATE SET ready_at_ms=excluded.ready_at_ms
        """, (job_id, int(ready_at_ms)))

    def delayed_range(self, now_ms: int) -> List[str]:
        cur = self.db.conn.execute(
            "SELECT job_id FROM delayed_jobs WHERE ready_at_ms <= ? ORDER BY ready_at_ms", (int(now_ms),))
        return [r["job_id"] for r in cur.fetchall()]

    def delayed_remove(self, job_id: str) -> bool:
        return self.db.conn.execute("DELETE FROM delayed_jobs WHERE job_id=?", (job_id,)).rowcount == 1

    def delayed_pop_ready(self, now_ms: int) -> List[str]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT job_id FROM delayed_jobs WHERE ready_at_ms <= ? ORDER BY ready_at_ms", (int(now_ms),)
            ).fetchall()
            conn.execute("DELETE FROM delayed_jobs WHERE ready_at_ms <= ?", (int(now_ms),))
        return [r["job_id"] for r in rows]

    def delayed_score(self, job_id: str) -> Optional[int]:
        row = self.db.conn.execute("SELECT ready_at_ms FROM delayed_jobs WHERE job_id=?", (job_id,)).fetchone()
        return row["ready_at_ms"] if row else None


def _check_priority(priority):
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(f"no lane for priority {priority}")

# models.py
import enum
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

MIN_PRIORITY = 1
MAX_PRIORITY = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def epoch_ms(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"      # created, waiting out a delay, or scheduled for retry
    READY = "READY"          # sitting in a priority lane
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"  # preempted, checkpoint persisted
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PCBStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    READY = "READY"
    COMPLETED = "COMPLETED"


class JobType(str, enum.Enum):
    DELAY = "DELAY"
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"


class OutcomeKind(str, enum.Enum):
    COMPLETED = "COMPLETED"
    PREEMPTED = "PREEMPTED"
    FAILED = "FAILED"
    INTERRUPTED = "INTERRUPTED"


@dataclass(frozen=True)
class Outcome:
    """Result of one execution attempt.

    Preemption is a value, not an exception, so it can never be routed through
    retry accounting by accident.
    """
    kind: OutcomeKind
    reason: Optional[str] = None

    @classmethod
    def completed(cls):
        return cls(OutcomeKind.COMPLETED)

    @classmethod
    def preempted(cls):
        return cls(OutcomeKind.PREEMPTED)

    @classmethod
    def failed(cls, reason: str):
        return cls(OutcomeKind.FAILED, reason)

    @classmethod
    def interrupted(cls):
        return cls(OutcomeKind.INTERRUPTED)


class SchedulerError(Exception):
    pass


class HandlerError(SchedulerError):
    """Raised by a payload handler; counted against the job's retries."""


class JobNotFound(SchedulerError):
    pass


@dataclass
class Job:
    type: str
    payload: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = JobStatus.PENDING.value
    priority: int = 5
    retry_count: int = 0
    max_retries: int = 3
    execution_time_secs: float = 10
    delay_ms: int = 0
    last_error: Optional[str] = None
    worker_id: Optional[str] = None
    next_run_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    updated_at: str = field(default_factory=lambda: utcnow().isoformat())

    def __post_init__(self):
        if not MIN_PRIORITY <= int(self.priority) <= MAX_PRIORITY:
            raise ValueError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {self.priority}")
        if isinstance(self.status, JobStatus):
            self.status = self.status.value
        if isinstance(self.type, JobType):
            self.type = self.type.value

    @property
    def created(self) -> datetime:
        return from_iso(self.created_at)

    @classmethod
    def from_row(cls, row):
        data = dict(row)
        data["payload"] = json.loads(data["payload"] or "{}")
        return cls(**data)

    def to_row(self) -> dict:
        data = self.__dict__.copy()
        data["payload"] = json.dumps(self.payload)
        return data


@dataclass
class ExecutionState:
    """Process control block: the durable checkpoint of one job's progress."""
    job_id: str
    status: str = PCBStatus.READY.value
    worker_id: Optional[str] = None
    start_time: Optional[str] = None
    elapsed_time: int = 0             # ms of work done
    expected_duration: int = 0        # ms
    deadline_time: Optional[str] = None
    execution_time_secs: float = 0
    execution_time_done_secs: float = 0
    total_delay_ms: int = 0
    delayed_so_far_ms: int = 0
    suspended_at: Optional[str] = None
    resume_count: int = 0
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    updated_at: str = field(default_factory=lambda: utcnow().isoformat())

    def __post_init__(self):
        if isinstance(self.status, PCBStatus):
            self.status = self.status.value

    @property
    def remaining_secs(self) -> float:
        return max(0.0, self.execution_time_secs - self.execution_time_done_secs)

    @property
    def remaining_delay_ms(self) -> int:
        return max(0, self.total_delay_ms - self.delayed_so_far_ms)

    @classmethod
    def from_row(cls, row):
        return cls(**dict(row))

    def to_row(self) -> dict:
        return self.__dict__.copy()

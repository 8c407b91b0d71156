# state.py
"""Runtime records for runs, jobs, steps, runners and log entries."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from .model import WorkflowSpec


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED)


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    # Stopped by a run cancellation while on a runner.
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED)

    @property
    def active(self) -> bool:
        return self in (JobStatus.DISPATCHED, JobStatus.RUNNING)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class RunnerStatus(str, Enum):
    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass
class Run:
    workflow: WorkflowSpec
    id: str = field(default_factory=new_id)
    status: RunStatus = RunStatus.PENDING
    cancel_requested: bool = False
    inputs: dict = field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class Job:
    run_id: str
    name: str
    index: int  # slot in the compiled graph
    id: str = field(default_factory=new_id)
    status: JobStatus = JobStatus.PENDING
    needs: Tuple[str, ...] = ()  # job ids
    runner_id: Optional[str] = None
    lease_id: Optional[str] = None
    cancel_requested: bool = False
    error: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class Step:
    run_id: str
    job_id: str
    index: int
    name: str
    command: str
    continue_on_error: bool = False
    id: str = field(default_factory=new_id)
    status: StepStatus = StepStatus.PENDING
    exit_code: Optional[int] = None
    output: str = ""
    error: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class Runner:
    id: str
    tags: frozenset = frozenset()
    version: str = ""
    status: RunnerStatus = RunnerStatus.ONLINE
    last_heartbeat: float = 0.0  # registry clock seconds
    job_id: Optional[str] = None
    registered_at: datetime = field(default_factory=now_utc)


@dataclass(frozen=True)
class LogEntry:
    run_id: str
    step_id: str
    seq: int
    level: str
    content: str
    timestamp: datetime = field(default_factory=now_utc)

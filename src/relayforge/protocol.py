# protocol.py
"""Messages exchanged between the control plane and runners."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .state import JobStatus, StepStatus


class RunnerRegistration(BaseModel):
    runner_id: str
    tags: List[str] = Field(default_factory=list)
    version: str = ""


class PollRequest(BaseModel):
    runner_id: str
    tags: Optional[List[str]] = None
    # long-poll budget in seconds; server default when omitted
    wait: Optional[float] = None


class HeartbeatResponse(BaseModel):
    # job ids the runner must stop
    cancel: List[str] = Field(default_factory=list)


class AssignedStep(BaseModel):
    step_id: str
    name: str
    run: str
    kind: str = "shell"
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    continue_on_error: bool = False
    timeout: Optional[float] = None


class JobPayload(BaseModel):
    name: str
    tags: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    steps: List[AssignedStep] = Field(default_factory=list)


class Assignment(BaseModel):
    job_id: str
    run_id: str
    lease_id: str
    job_spec: JobPayload


class StepResult(BaseModel):
    step_id: str
    lease_id: str
    status: StepStatus
    exit_code: Optional[int] = None
    output: str = ""
    error: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobResult(BaseModel):
    job_id: str
    lease_id: str
    status: JobStatus
    error: Optional[str] = None
    # set when the runner stopped because of a cancellation signal
    cancelled: bool = False


class LogAppend(BaseModel):
    lease_id: str
    level: Literal["debug", "info", "warn", "error"] = "info"
    content: str

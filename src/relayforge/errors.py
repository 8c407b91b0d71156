# errors.py
"""
Error taxonomy for relayforge.

Compile-time errors (InvalidSpecError and subclasses) block run creation.
Everything else is raised at a runtime boundary and is attributable to a
specific run, job, step, runner or lease.
"""
from __future__ import annotations

from typing import Iterable, Optional


class OrchestratorError(Exception):
    """Base exception for relayforge."""
    pass


class InvalidSpecError(OrchestratorError):
    """The workflow document is malformed or violates a structural rule."""

    def __init__(self, message: str, *, path: Optional[str] = None):
        self.message = message
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class UnknownDependencyError(InvalidSpecError):
    """A job `needs` a job that is not defined in the same workflow."""

    def __init__(self, job: str, missing: str, known: Iterable[str] = ()):
        self.job = job
        self.missing = missing
        known = sorted(known)
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'. Known jobs: {known}",
            path=f"jobs.{job}.needs",
        )


class CycleDetectedError(InvalidSpecError):
    """The job graph could not be fully ordered."""

    def __init__(self, jobs: Iterable[str]):
        self.jobs = list(jobs)
        super().__init__(f"Dependency cycle between jobs: {self.jobs}")


class AssignmentTimeoutError(OrchestratorError):
    """No eligible job arrived for a polling runner within its wait budget."""

    def __init__(self, runner_id: str, waited: float):
        self.runner_id = runner_id
        self.waited = waited
        super().__init__(f"No job for runner '{runner_id}' after {waited:.1f}s")


class ExecutionError(OrchestratorError):
    """A step could not run or exited non-zero."""

    def __init__(self, step: str, message: str, exit_code: Optional[int] = None):
        self.step = step
        self.exit_code = exit_code
        self.message = message
        super().__init__(
            f"step '{step}' failed (exit={exit_code}): {message}"
            if exit_code is not None
            else f"step '{step}' failed: {message}"
        )


class LeaseExpiredError(OrchestratorError):
    """The caller's lease on a job is no longer the job's current lease."""

    def __init__(self, job_id: str, lease_id: Optional[str]):
        self.job_id = job_id
        self.lease_id = lease_id
        super().__init__(f"Lease {lease_id} on job {job_id} is not active")


class CancellationError(OrchestratorError):
    """Work was stopped because its run was cancelled or timed out."""

    def __init__(self, run_id: str, reason: str = "cancelled"):
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Run {run_id} {reason}")


class InvalidTransitionError(OrchestratorError):
    """A lifecycle operation is not legal in the entity's current status."""

    def __init__(self, entity: str, entity_id: str, current: str, operation: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.operation = operation
        super().__init__(f"Cannot {operation} {entity} {entity_id} in status '{current}'")


class NotFoundError(OrchestratorError):
    """Unknown run, job, step or runner."""

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")

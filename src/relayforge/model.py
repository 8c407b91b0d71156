# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

# Closed set of step kinds. Only shell commands exist today; the compiler
# rejects anything else and the executor dispatches on this field.
SHELL = "shell"
STEP_KINDS = (SHELL,)


@dataclass(frozen=True)
class StepSpec:
    """A single command (step) inside a job."""
    name: str
    run: str
    kind: str = SHELL
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    continue_on_error: bool = False
    timeout: Optional[float] = None  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "run": self.run,
            "kind": self.kind,
            "env": dict(self.env),
            "cwd": self.cwd,
            "continue_on_error": self.continue_on_error,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StepSpec:
        return cls(
            name=data["name"],
            run=data.get("run", ""),
            kind=data.get("kind", SHELL),
            env=dict(data.get("env") or {}),
            cwd=data.get("cwd"),
            continue_on_error=bool(data.get("continue_on_error", False)),
            timeout=data.get("timeout"),
        )


@dataclass(frozen=True)
class JobSpec:
    """
    A job: ordered steps + dependencies + the runner tags it requires.

    `needs` lists names of jobs that must succeed BEFORE this job.
    """
    name: str
    steps: Tuple[StepSpec, ...]
    needs: Tuple[str, ...] = ()
    tags: frozenset = frozenset()
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None  # seconds, whole job

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "steps": [s.to_dict() for s in self.steps],
            "needs": list(self.needs),
            "tags": sorted(self.tags),
            "env": dict(self.env),
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobSpec:
        return cls(
            name=data["name"],
            steps=tuple(StepSpec.from_dict(s) for s in data.get("steps", [])),
            needs=tuple(data.get("needs", [])),
            tags=frozenset(data.get("tags", [])),
            env=dict(data.get("env") or {}),
            timeout=data.get("timeout"),
        )


@dataclass(frozen=True)
class WorkflowSpec:
    """
    A named set of jobs. `jobs` keeps declaration order, which the compiler
    uses as the deterministic tie-break between simultaneously ready jobs.
    """
    name: str
    jobs: Dict[str, JobSpec] = field(default_factory=dict)
    description: str = ""
    timeout: Optional[float] = None  # seconds, whole run

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "timeout": self.timeout,
            "jobs": [j.to_dict() for j in self.jobs.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WorkflowSpec:
        jobs = [JobSpec.from_dict(j) for j in data.get("jobs", [])]
        return cls(
            name=data.get("name", ""),
            jobs={j.name: j for j in jobs},
            description=data.get("description", ""),
            timeout=data.get("timeout"),
        )

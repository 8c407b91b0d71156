# src/relayforge/dsl.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .errors import InvalidSpecError
from .model import JobSpec, StepSpec, WorkflowSpec


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> StepSpec:
    """Create a shell step."""
    return StepSpec(
        name=name,
        run=cmd,
        cwd=cwd,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    needs: Optional[Iterable[str]] = None,
    tags: Optional[Iterable[str]] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> JobSpec:
    if not steps:
        raise InvalidSpecError(f"job({name!r}) must have at least one step")

    return JobSpec(
        name=name,
        steps=tuple(steps),
        needs=tuple(needs or ()),
        tags=frozenset(tags or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._tags: list[str] = []
        self._env: dict[str, str] = {}
        self._timeout: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, *tags: str):
        self._tags.extend(tags)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **options):
        self._steps.append(sh(name, run, cwd=cwd, **options))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise InvalidSpecError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            *self._steps,
            needs=self._needs,
            tags=self._tags,
            env=self._env,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: JobSpec,
    name: str = "workflow",
    description: str = "",
    timeout: float | None = None,
) -> WorkflowSpec:
    """
    Workflow definition helper. Jobs keep the order they are passed in.

    Users can write:
        from relayforge import wf, job, sh

        def workflow():
            return wf(
                job("build", sh("Build", "make")),
                job("test", sh("Test", "make test"), needs=["build"]),
            )
    """
    by_name: Dict[str, JobSpec] = {}
    dupes: List[str] = []
    for j in jobs:
        if j.name in by_name:
            dupes.append(j.name)
        by_name[j.name] = j
    if dupes:
        raise InvalidSpecError(f"Duplicate job names found: {sorted(set(dupes))}")

    return WorkflowSpec(name=name, jobs=by_name, description=description, timeout=timeout)

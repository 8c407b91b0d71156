# compiler.py
from __future__ import annotations

import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .dag import CompiledWorkflow, compile_graph
from .errors import InvalidSpecError
from .model import STEP_KINDS, JobSpec, StepSpec, WorkflowSpec

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys (e.g. a job defined twice)."""


def _construct_unique_mapping(loader: yaml.SafeLoader, node: yaml.MappingNode, deep: bool = False):
    seen = set()
    for key_node, _value in node.value:
        key = loader.construct_object(key_node, deep=deep)
        try:
            duplicate = key in seen
        except TypeError:
            # unhashable, e.g. a "? [a, b]" complex key
            raise InvalidSpecError(
                "mapping keys must be scalars",
                path=f"line {key_node.start_mark.line + 1}",
            ) from None
        if duplicate:
            raise InvalidSpecError(
                f"duplicate key {key!r}",
                path=f"line {key_node.start_mark.line + 1}",
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping
)


def parse_duration(value: Any, path: str) -> Optional[float]:
    """Accept seconds as a number or a string like '30s', '5m', '1h'."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidSpecError(f"invalid duration {value!r}", path=path)
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        m = _DURATION.match(str(value))
        if not m:
            raise InvalidSpecError(f"invalid duration {value!r}", path=path)
        seconds = float(m.group(1)) * _UNITS[m.group(2)]
    if seconds <= 0:
        raise InvalidSpecError(f"duration must be positive, got {value!r}", path=path)
    return seconds


def _str_map(value: Any, path: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidSpecError("expected a mapping", path=path)
    # force values to str for env compatibility
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _str_list(value: Any, path: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidSpecError("expected a string or a list of strings", path=path)
    return list(value)


def _opt_str(value: Any, path: str) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise InvalidSpecError(f"expected a string, got {type(value).__name__}", path=path)
    return value


def _parse_step(raw: Any, position: int, path: str) -> StepSpec:
    if not isinstance(raw, dict):
        raise InvalidSpecError("step must be a mapping", path=path)
    if "uses" in raw:
        raise InvalidSpecError("'uses' actions are not supported; use 'run'", path=path)

    name = _opt_str(raw.get("name"), f"{path}.name") or f"Step {position + 1}"
    return StepSpec(
        name=name,
        run=_opt_str(raw.get("run"), f"{path}.run") or "",
        env=_str_map(raw.get("env"), f"{path}.env"),
        cwd=_opt_str(raw.get("working-directory"), f"{path}.working-directory"),
        continue_on_error=bool(raw.get("continue-on-error", False)),
        timeout=parse_duration(raw.get("timeout"), f"{path}.timeout"),
    )


def _parse_job(name: str, raw: Any) -> JobSpec:
    path = f"jobs.{name}"
    if not isinstance(raw, dict):
        raise InvalidSpecError("job must be a mapping", path=path)

    steps_raw = raw.get("steps") or []
    if not isinstance(steps_raw, list):
        raise InvalidSpecError("steps must be a list", path=f"{path}.steps")

    tags = _str_list(raw.get("runs-on"), f"{path}.runs-on") + _str_list(raw.get("tags"), f"{path}.tags")
    return JobSpec(
        name=name,
        steps=tuple(_parse_step(s, i, f"{path}.steps[{i}]") for i, s in enumerate(steps_raw)),
        needs=tuple(_str_list(raw.get("needs"), f"{path}.needs")),
        tags=frozenset(tags),
        env=_str_map(raw.get("env"), f"{path}.env"),
        timeout=parse_duration(raw.get("timeout"), f"{path}.timeout"),
    )


def parse_workflow(text: str) -> WorkflowSpec:
    """Parse a YAML workflow document into a WorkflowSpec (no graph checks)."""
    try:
        doc = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise InvalidSpecError(f"invalid YAML: {e}") from e

    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise InvalidSpecError("workflow document must be a mapping")

    jobs_raw = doc.get("jobs") or {}
    if not isinstance(jobs_raw, dict):
        raise InvalidSpecError("jobs must be a mapping of job name -> job", path="jobs")

    jobs = {str(n): _parse_job(str(n), j) for n, j in jobs_raw.items()}
    return WorkflowSpec(
        name=str(doc.get("name") or "workflow"),
        description=str(doc.get("description") or ""),
        jobs=jobs,
        timeout=parse_duration(doc.get("timeout"), "timeout"),
    )


def validate_spec(spec: WorkflowSpec) -> None:
    """Structural checks that do not need the graph."""
    for name, job in spec.jobs.items():
        if job.name != name:
            raise InvalidSpecError(f"job key {name!r} does not match job name {job.name!r}", path=f"jobs.{name}")
        if not job.steps:
            raise InvalidSpecError("job must have at least one step", path=f"jobs.{name}.steps")
        for i, step in enumerate(job.steps):
            path = f"jobs.{name}.steps[{i}]"
            if step.kind not in STEP_KINDS:
                raise InvalidSpecError(f"unknown step kind {step.kind!r}", path=path)
            if step.run is not None and not isinstance(step.run, str):
                raise InvalidSpecError("step command must be a string", path=f"{path}.run")
            if not step.run or not step.run.strip():
                raise InvalidSpecError(f"step '{step.name}' has no command", path=path)


def compile_workflow(source: Union[str, WorkflowSpec]) -> CompiledWorkflow:
    """
    Compile YAML text or a WorkflowSpec into a validated, acyclic graph.

    Raises InvalidSpecError (or UnknownDependencyError / CycleDetectedError)
    without side effects.
    """
    spec = parse_workflow(source) if isinstance(source, str) else source
    validate_spec(spec)
    return compile_graph(spec)


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowSpec:
    """
    Load a workflow from a file path.

    YAML files (.yml/.yaml) are parsed directly. Python files must define
    either:
      - workflow() -> WorkflowSpec
      - WORKFLOW = WorkflowSpec(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        return parse_workflow(wf_path.read_text(encoding="utf-8"))

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    module_name = f"relayforge_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    spec = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        spec = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        spec = globals_dict["WORKFLOW"]

    if not isinstance(spec, WorkflowSpec):
        raise TypeError(
            "Workflow must return/define a WorkflowSpec. "
            "Define workflow() -> WorkflowSpec or WORKFLOW = wf(...)."
        )
    return spec

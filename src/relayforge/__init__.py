__version__ = "0.1.0"

from .compiler import compile_workflow, load_workflow, parse_workflow
from .dsl import job, sh, wf, JobBuilder, build
from .model import JobSpec, StepSpec, WorkflowSpec
from .orchestrator import Orchestrator, RunDetail

__all__ = [
    "compile_workflow",
    "load_workflow",
    "parse_workflow",
    "job",
    "sh",
    "wf",
    "JobBuilder",
    "build",
    "JobSpec",
    "StepSpec",
    "WorkflowSpec",
    "Orchestrator",
    "RunDetail",
]

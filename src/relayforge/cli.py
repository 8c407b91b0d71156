# cli.py
from __future__ import annotations

import asyncio
import json
import socket
import sys
import urllib.error
import urllib.request
from pathlib import Path
from urllib.parse import urljoin

import click

from relayforge.agent.agent import Agent, run_agent
from relayforge.agent.local import LocalClient
from relayforge.compiler import compile_workflow, load_workflow
from relayforge.errors import InvalidSpecError
from relayforge.model import WorkflowSpec
from relayforge.orchestrator import Orchestrator, RunDetail
from relayforge.settings import Settings
from relayforge.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("relayforge.yml", "relayforge.yaml", "relayforge_workflow.py")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = {current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()}
    for pattern in ("*.workflow.yml", "*.workflow.yaml", "*_workflow.py"):
        found.update(current_dir.glob(pattern))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayforge run --workflow ci.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *[f"  {name}" for name in DEFAULT_WORKFLOWS], "  *.workflow.yml", "  *_workflow.py"],
            suggestion="Create relayforge.yml, or specify a workflow explicitly:\n  relayforge run --workflow ci.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  relayforge run --workflow relayforge.yml",
        )
        sys.exit(1)

    return workflow_files[0]


def load_or_exit(ctx, workflow: str | None) -> tuple[Path, WorkflowSpec]:
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        spec = load_workflow(workflow_path)
        compile_workflow(spec)
    except InvalidSpecError as e:
        console.print_error("Invalid workflow", f"{workflow_path}: {e}")
        sys.exit(1)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)
    return workflow_path, spec


def parse_inputs(values: tuple[str, ...]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--input")
        inputs[key] = value
    return inputs


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayforge: workflow runs dispatched to a pool of runners."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (.yml, .yaml or .py)")
@click.pass_context
def validate(ctx, workflow):
    """Compile a workflow and print its execution order."""
    console = get_console()
    workflow_path, spec = load_or_exit(ctx, workflow)
    compiled = compile_workflow(spec)
    console.print_header(f"{spec.name} ({workflow_path})")
    console.print_plan(compiled.names[i] for i in compiled.order)
    console.print_info(f"\nOK: {len(compiled)} job(s)")


async def run_local(
    spec: WorkflowSpec,
    inputs: dict[str, str],
    runners: int,
    tags: frozenset,
    work_dir: Path,
) -> RunDetail:
    """Run a workflow against an in-process control plane and local runners."""
    console = get_console()
    settings = Settings(heartbeat_interval=2.0, poll_wait=0.5)
    async with Orchestrator(settings=settings) as orch:
        client = LocalClient(orch)
        agents = [
            Agent(
                client,
                f"local-{i + 1}",
                tags,
                poll_interval=0.1,
                heartbeat_interval=settings.heartbeat_interval,
                work_dir=work_dir,
            )
            for i in range(runners)
        ]
        tasks = [asyncio.create_task(a.run(), name=a.runner_id) for a in agents]
        try:
            run = await orch.submit(spec, inputs)
            console.print_run_started(run.id, spec.name, len(spec.jobs))

            detail = await orch.get_run(run.id)
            names = {
                step.id: (job.name, step.name)
                for job in detail.jobs
                for step in detail.steps[job.id]
            }
            async for entry in orch.subscribe(run.id):
                job_name, step_name = names.get(entry.step_id, ("?", "?"))
                console.print_log(job_name, step_name, entry.level, entry.content)

            await orch.wait(run.id)
            return await orch.get_run(run.id)
        finally:
            for a in agents:
                a.stop()
            await asyncio.gather(*tasks, return_exceptions=True)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (.yml, .yaml or .py)")
@click.option("--runners", default=2, show_default=True, type=click.IntRange(min=1), help="Number of local runners")
@click.option("--tag", "tags", multiple=True, help="Runner tag (repeatable; defaults to every tag the workflow uses)")
@click.option("--input", "inputs", multiple=True, help="Run input as KEY=VALUE (repeatable)")
@click.option("--work-dir", default=".", type=click.Path(file_okay=False, path_type=Path), help="Directory steps run in")
@click.pass_context
def run(ctx, workflow, runners, tags, inputs, work_dir):
    """Run a workflow locally with an in-process control plane."""
    console = get_console()
    _, spec = load_or_exit(ctx, workflow)
    run_inputs = parse_inputs(inputs)

    runner_tags = frozenset(tags) if tags else frozenset().union(*(j.tags for j in spec.jobs.values()))
    unreachable = [name for name, j in spec.jobs.items() if not j.tags <= runner_tags]
    if unreachable:
        console.print_error(
            "No runner can take some jobs",
            f"Local runners have tags {sorted(runner_tags)}",
            details=[f"{name}: needs {sorted(spec.jobs[name].tags)}" for name in unreachable],
            suggestion="Add the missing --tag options or drop them to use every tag the workflow needs.",
        )
        sys.exit(1)

    try:
        detail = asyncio.run(run_local(spec, run_inputs, runners, runner_tags, work_dir))
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    for job in detail.jobs:
        for step in detail.steps[job.id]:
            if step.status.value == "failed":
                console.print_failure(f"{job.name} / {step.name}", step.error, exit_code=step.exit_code)
    console.print_results(detail.run.status.value, {job.name: job.status.value for job in detail.jobs})

    if detail.run.status.value != "success":
        sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--runner-id", default=None, help="Unique runner identifier (defaults to hostname)")
@click.option("--tag", "tags", multiple=True, help="Capability tag (repeatable)")
@click.option("--poll-interval", default=5.0, type=float, help="Seconds between polls when no jobs are available")
@click.option("--heartbeat-interval", default=10.0, type=float, help="Seconds between heartbeats")
@click.option("--work-dir", default=".", type=click.Path(file_okay=False, path_type=Path), help="Directory steps run in")
@click.pass_context
def agent(ctx, api, runner_id, tags, poll_interval, heartbeat_interval, work_dir):
    """Run a runner agent that polls the API for jobs and executes them."""
    console = get_console()

    if not runner_id:
        runner_id = socket.gethostname()

    try:
        run_agent(
            api,
            runner_id,
            tags,
            poll_interval=poll_interval,
            heartbeat_interval=heartbeat_interval,
            work_dir=work_dir,
        )
    except KeyboardInterrupt:
        console.print_info("\nAgent stopped by user")
        sys.exit(0)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


def api_request(ctx, api: str, method: str, path: str, data: dict | None = None) -> dict | list:
    """Call the API and exit with a readable message on failure."""
    console = get_console()
    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", path.lstrip("/"))
    req_data = json.dumps(data).encode("utf-8") if data is not None else None
    req = urllib.request.Request(url, data=req_data, headers={"Content-Type": "application/json"}, method=method)

    try:
        with urllib.request.urlopen(req) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
    except json.JSONDecodeError as e:
        console.print_error(
            "Invalid API response",
            "Could not parse JSON response from API.",
            details=[str(e)],
            suggestion=f"Check if the API at {base_url} is responding correctly.",
        )
    if ctx.obj.get("debug", False):
        import traceback
        traceback.print_exc()
    sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--workflow", default=None, help="Workflow file path (.yml, .yaml or .py)")
@click.option("--input", "inputs", multiple=True, help="Run input as KEY=VALUE (repeatable)")
@click.pass_context
def submit(ctx, api, workflow, inputs):
    """Submit a workflow run to the control plane API."""
    console = get_console()
    workflow_path, spec = load_or_exit(ctx, workflow)
    console.print_info(f"Loaded {len(spec.jobs)} job(s) from {workflow_path}")

    body: dict = {"inputs": parse_inputs(inputs)}
    if workflow_path.suffix in (".yml", ".yaml"):
        body["workflow"] = workflow_path.read_text(encoding="utf-8")
    else:
        body["spec"] = spec.to_dict()

    result = api_request(ctx, api, "POST", "/runs", body)
    console.print_info(f"\nSuccessfully submitted run to {api.rstrip('/')}")
    console.print_info(f"  Run ID: {result['id']}")
    console.print_info(f"  Status: {result['status']}")
    console.print_info(f"\nFollow it with:\n  relayforge status --api {api} {result['id']}")


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.argument("run_id", required=False)
@click.pass_context
def status(ctx, api, run_id):
    """Show one run's jobs, or list recent runs."""
    console = get_console()
    if run_id is None:
        runs = api_request(ctx, api, "GET", "/runs")
        console.print_header("Runs")
        for r in runs:
            console.print_info(f"  {r['id']}  {r['workflow']:<20} {r['status'].upper()}")
        return

    detail = api_request(ctx, api, "GET", f"/runs/{run_id}")
    console.print_header(f"Run {detail['id']} ({detail['workflow']})")
    for job in detail["jobs"]:
        console.print_info(f"  {job['name']}: {job['status'].upper()}")
        for step in job["steps"]:
            console.print_info(f"    - {step['name']}: {step['status']}")
    console.print_results(detail["status"], {j["name"]: j["status"] for j in detail["jobs"]})


if __name__ == "__main__":
    cli()

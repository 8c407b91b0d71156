"""Console output formatting utilities for relayforge."""

from __future__ import annotations

import sys
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, run_id: str, workflow: str, job_count: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run ID: {run_id}")
        print(f"Workflow: {workflow}")
        print(f"Jobs: {job_count}")
        print()

    def print_plan(self, order: Iterable[str]) -> None:
        """Print the job execution order."""
        for i, name in enumerate(order, 1):
            print(f"  {i}. {name}")

    def print_log(self, job: str, step: str, level: str, content: str) -> None:
        """Print one log line, prefixed with its job and step."""
        stream = sys.stderr if level == "error" else sys.stdout
        print(f"[{job}/{step}] {content}", file=stream)

    def print_failure(self, name: str, reason: str, exit_code: Optional[int] = None, is_job: bool = False) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_results(self, status: str, results: dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print(f"RESULTS ({status.upper()})")
        print("=" * 40)
        for job, job_status in results.items():
            print(f"  {job}: {job_status.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_agent_started(self, runner_id: str, api: str, poll_interval: float, tags: Iterable[str]) -> None:
        """Print agent start information."""
        print("\nAGENT STARTED")
        print(f"Runner ID: {runner_id}")
        print(f"API: {api}")
        print(f"Tags: {', '.join(sorted(tags)) or '-'}")
        print(f"Polling every: {poll_interval:g}s")
        print()

    def print_assignment(self, job_name: str, run_id: str) -> None:
        """Print job assignment message."""
        print("\nJOB ASSIGNED")
        print(f"Job: {job_name}")
        print(f"Run ID: {run_id}")

    def print_execution_complete(self, status: str, duration: Optional[float] = None) -> None:
        """Print execution completion message."""
        print("\nEXECUTION COMPLETE")
        print(f"Status: {status}")
        if duration is not None:
            print(f"Duration: {duration:.1f}s")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console

"""Console output formatting utilities for releaseci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-job progress lines
        """
        self.debug = debug
        self.quiet = quiet
        # matrix siblings report from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        ref: str,
        event: str,
        concurrency_key: str,
        job_count: int,
    ) -> None:
        """Trigger context and concurrency group of a run about to execute."""
        self._emit(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Ref: {ref}",
            f"Event: {event}",
            f"Concurrency group: {concurrency_key}",
            f"Jobs: {job_count}",
            "",
        )

    def print_noop(self, reason: str) -> None:
        self._emit(f"NO-OP: {reason}")

    def print_superseded(self, old_run: str, new_run: str) -> None:
        self._emit(f"SUPERSEDED: run {old_run} cancelled in favour of {new_run}")

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, name: str) -> None:
        if not self.quiet:
            self._emit(f"STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        if not self.quiet:
            self._emit(f"STEP SKIPPED: {name} ({job})")

    def print_success(self, name: str) -> None:
        if not self.quiet:
            self._emit(f"JOB SUCCEEDED: {name}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        elif reason:
            lines.append(f"Error: {reason.splitlines()[0]}")
        self._emit(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """A job instance that was resolved without running."""
        if not self.quiet:
            self._emit(f"JOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str) -> None:
        if not self.quiet:
            self._emit(f"JOB CANCELLED: {name}")

    def print_plan_stage(self, index: int, jobs: Iterable[str]) -> None:
        self._emit(f"Stage {index}: {', '.join(jobs)}")

    def print_plan_job(self, name: str, reason: str) -> None:
        self._emit(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        self._emit(f"  {name} (skipped: {reason})")

    def print_results(self, results: dict[str, str]) -> None:
        """Per-instance status table, keyed by display label."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        self._emit(*lines)

    def print_outcome(self, outcome: str) -> None:
        self._emit(f"\nOUTCOME: {outcome}")

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
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# process-wide console; the CLI replaces it per invocation
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

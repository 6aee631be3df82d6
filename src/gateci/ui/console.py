"""Console output formatting utilities for gateci."""

from __future__ import annotations

import sys
import threading
from typing import Callable, Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, redact: Optional[Callable[[str], str]] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            redact: Optional function masking secret values in every line
        """
        self.debug = debug
        self._redact = redact
        # workers print concurrently
        self._lock = threading.Lock()

    def set_redactor(self, redact: Optional[Callable[[str], str]]) -> None:
        self._redact = redact

    def _out(self, text: str, *, err: bool = False) -> None:
        if self._redact is not None:
            text = self._redact(text)
        with self._lock:
            print(text, file=sys.stderr if err else sys.stdout, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(
        self,
        pipeline: str,
        run_id: str,
        job_count: int,
        workers: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED\n"
            f"Pipeline: {pipeline}\n"
            f"Run ID: {run_id}\n"
            f"Jobs: {job_count}\n"
            f"Workers: {workers}\n"
        )

    def print_wave(self, index: int, jobs: Iterable[str]) -> None:
        self._out(f"=== Wave {index + 1}: {sorted(jobs)} ===")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str, attempt: int = 1) -> None:
        """Print step start message."""
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        self._out(f"[{job}] STEP: {name}{suffix}")

    def print_job_finished(self, name: str, status: str, warnings: Optional[list[str]] = None) -> None:
        if warnings:
            self._out(f"[{name}] STATUS: {status} (with warnings)")
            for w in warnings:
                self._out(f"[{name}]   warning: {w}")
        else:
            self._out(f"[{name}] STATUS: {status}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        log: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            log: Optional path to the captured step output
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if log:
            lines.append(f"Log: {log}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split('\n')[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out("\n".join(lines))

    def print_retry(self, job: str, step: str, attempt: int, delay: float, reason: str) -> None:
        self._out(f"[{job}] RETRY: {step} (attempt {attempt} in {delay:.1f}s) after: {reason}")

    def print_gate(self, job: str, step: str, decision: str, reasons: list[str]) -> None:
        self._out(f"[{job}] GATE: {step} -> {decision.upper()}")
        for r in reasons:
            self._out(f"[{job}]   {r}")

    def print_artifact_saved(self, job: str, name: str, digest: str) -> None:
        """Print artifact save message."""
        short = digest[:12] + "..." if len(digest) > 12 else digest
        self._out(f"[{job}] ARTIFACT: {name} saved ({short})")

    def print_artifact_restored(self, job: str, name: str, producer: str) -> None:
        self._out(f"[{job}] ARTIFACT: {name} restored from {producer}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_cancel_requested(self, grace: float) -> None:
        self._out(f"\nCANCEL REQUESTED: in-flight steps get {grace:g}s before termination", err=True)

    def print_plan_wave(self, index: int, jobs: Iterable[str]) -> None:
        """Print one wave of the execution plan."""
        self._out(f"  wave {index + 1}: {', '.join(sorted(jobs))}")

    def print_results(self, results: dict[str, str], run_status: str, degraded: bool = False) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        lines.append("-" * 40)
        lines.append(f"  RUN: {run_status.upper()}" + (" (degraded)" if degraded else ""))
        self._out("\n".join(lines))

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
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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

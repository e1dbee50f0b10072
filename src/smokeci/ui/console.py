"""Console output formatting utilities for smokeci."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from smokeci.model import RunResult, StepResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_output: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, show captured stderr/stdout tail of failed steps
        """
        self.debug = debug
        self.show_output = show_output
        # steps finish on worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        with self._lock:
            print(f"\n{title}")
            print("-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        step_count: int,
        shared_context: bool = False,
    ) -> None:
        """Print run start information."""
        with self._lock:
            print("\nRUN STARTED")
            print(f"Pipeline: {pipeline}")
            print(f"Steps: {step_count}")
            if shared_context:
                print("Context: shared")
            print()

    def print_step_start(self, name: str, command: Optional[List[str]] = None) -> None:
        """Print step start message."""
        with self._lock:
            print(f"STEP STARTED: {name}")
            if self.debug and command:
                print(f"  $ {' '.join(command)}")

    def print_step_result(self, result: "StepResult") -> None:
        """Print the outcome of one finished step."""
        from smokeci.model import StepStatus

        duration = f" ({result.duration:.1f}s)" if result.duration is not None else ""
        with self._lock:
            if result.status is StepStatus.SUCCEEDED:
                print(f"STEP SUCCEEDED: {result.step_id}{duration}")
                return
            prefix = "STEP TIMED OUT" if result.status is StepStatus.TIMED_OUT else "STEP FAILED"
            print(f"{prefix}: {result.step_id}{duration}")
            if result.exit_code is not None:
                print(f"Exit code: {result.exit_code}")
            if result.attempts > 1:
                print(f"Attempts: {result.attempts}")
            if result.error:
                print(f"Error: {result.error}")
            if self.show_output:
                tail = (result.stderr or result.stdout).strip().splitlines()[-10:]
                for line in tail:
                    print(f"  | {line}")

    def print_step_skipped(self, name: str, reason: str) -> None:
        """Print step skipped message."""
        with self._lock:
            print(f"STEP SKIPPED: {name} ({reason})")

    def print_retry(self, name: str, attempt: int, max_attempts: int, result: "StepResult") -> None:
        """Print retry message."""
        with self._lock:
            print(f"RETRY: {name} attempt {attempt}/{max_attempts} ended {result.status.value}, retrying")

    def print_plan(self, pipeline: str, order: List[str], stages: List[List[str]]) -> None:
        """Print execution order and parallel stages."""
        with self._lock:
            print(f"\nPLAN: {pipeline}")
            print("Order:")
            for i, name in enumerate(order, 1):
                print(f"  {i}. {name}")
            print("Stages:")
            for i, stage in enumerate(stages, 1):
                print(f"  {i}: {', '.join(stage)}")

    def print_results(self, run: "RunResult") -> None:
        """Print final results summary."""
        with self._lock:
            print("\n" + "=" * 40)
            print("RESULTS")
            print("=" * 40)
            for r in run.steps:
                print(f"  {r.step_id}: {r.status.value.upper()}")
            overall = run.status.value.upper()
            if run.cancelled:
                overall += " (cancelled)"
            print(f"\nOverall: {overall}")

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
        with self._lock:
            print(f"\nERROR: {title}", file=sys.stderr)
            print(f"{message}", file=sys.stderr)
            if details:
                for detail in details:
                    print(f"  {detail}", file=sys.stderr)
            if suggestion:
                print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

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

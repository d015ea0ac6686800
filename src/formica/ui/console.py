"""Console output formatting utilities for Formica."""

from __future__ import annotations

import sys
from typing import Iterable, Optional

from formica.model import JobCatalog, ScriptResult


class Console:
    """Centralized operator-facing output."""

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

    def print_started(
        self,
        config_dir: str,
        queue_dir: str,
        job_count: int,
    ) -> None:
        """Print orchestrator start information."""
        print("\nFORMICA CI IS NOW RUNNING")
        print(f"Configuration: {config_dir}")
        print(f"Queue: {queue_dir}")
        print(f"Jobs: {job_count}")
        print()

    def print_exit_logic(self, lines: Iterable[str]) -> None:
        """Explain what successive interrupts do."""
        for line in lines:
            print(line)

    def print_catalog(self, catalog: JobCatalog) -> None:
        """Print one line per discovered job."""
        self.print_header(f"JOBS ({len(catalog)})")
        for job in catalog.values():
            extras = []
            if job.agent_cleanup is not None:
                extras.append("cleanup")
            if job.steps:
                extras.append(f"{len(job.steps)} step(s)")
            suffix = f" [{', '.join(extras)}]" if extras else ""
            print(f"  {job.name}: {job.root_folder}{suffix}")

    def print_script_output(self, result: ScriptResult) -> None:
        """Print the captured output of a failed script verbatim."""
        print(f"The execution terminated with status {result.returncode}")
        print(f"The execution terminated with output:\n {result.stdout}")
        print(f"The execution terminated with error output:\n {result.stderr}")

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

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
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

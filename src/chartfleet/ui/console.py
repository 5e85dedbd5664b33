"""Console output formatting utilities for chartfleet."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional, Sequence, TextIO


class Console:
    """
    Centralized console output formatting.

    One instance is created by the CLI and handed to every component that
    logs. Workers print concurrently, so every write goes through a lock.
    """

    def __init__(
        self,
        debug: bool = False,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            out: Stream for regular output (defaults to stdout at write time)
            err: Stream for warnings and errors (defaults to stderr at write time)
        """
        self.debug = debug
        self._out = out
        self._err = err
        self._lock = threading.Lock()

    # ---- raw writers ----
    def _write(self, message: str, to_err: bool = False) -> None:
        stream = (self._err or sys.stderr) if to_err else (self._out or sys.stdout)
        with self._lock:
            print(message, file=stream)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._write(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._write(f"[DEBUG] {message}", to_err=True)

    def print_warning(self, message: str) -> None:
        self._write(f"WARN: {message}", to_err=True)

    def print_release_start(self, operation: str, release_id: str) -> None:
        self._write(f"{operation.upper()}: {release_id}")

    def print_release_failure(self, release_id: str, reason: str, exit_code: Optional[int] = None) -> None:
        """
        Print failure message for one release.

        Args:
            release_id: Release identity
            reason: Failure reason/error message
            exit_code: Optional exit code of the engine
        """
        lines = [f"RELEASE FAILED: {release_id}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._write("\n".join(lines), to_err=True)

    def print_table(self, headers: Sequence[str], rows: List[Sequence[str]]) -> None:
        """Print rows as tab-aligned columns."""
        widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(cell))
        lines = []
        for row in [list(headers)] + [list(r) for r in rows]:
            lines.append("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
        self._write("\n".join(lines))

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for release, status in results.items():
            status_display = status.upper() if status != "ok" else "SUCCESS"
            lines.append(f"  {release}: {status_display}")
        self._write("\n".join(lines))

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
        self._write("\n".join(lines), to_err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=self._err or sys.stderr)
        else:
            self._write(f"Error: {exc}", to_err=True)

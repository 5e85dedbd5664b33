# cache.py
from __future__ import annotations

import os
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from filelock import FileLock, Timeout

from .fs import FileSystem, default_filesystem
from .ui.console import Console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Every fetched chart lives under one cache root:
#
#   <root>/<sanitized source>/...            remote (http/https/git::) charts
#   <root>/<ns>/<ctx>/<name>/<chart>/<ver>   OCI pulls
#
# OCI pulls are deduplicated with a double-checked file lock:
#
#   if chart present: done
#   lock <dest>.lock
#     if chart present: done        (someone else pulled while we waited)
#     pull()
#   unlock                          (always, also when pull() raised)
#
# The lock is an OS-level file lock, so separate chartfleet processes
# sharing a cache cooperate as well as threads inside one process.
# ---------------------------------------------------------------------

CACHE_HOME_ENV = "CHARTFLEET_CACHE_HOME"
APP_NAME = "chartfleet"
CHART_FILE = "Chart.yaml"


class LockTimeoutError(TimeoutError):
    """The chart lock could not be acquired in time."""

    def __init__(self, lock_path: str, timeout: float):
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(f"timed out after {timeout}s waiting for chart lock {lock_path}")


def cache_dir() -> str:
    """Cache root: $CHARTFLEET_CACHE_HOME, else the user cache dir, else ./.chartfleet."""
    h = os.environ.get(CACHE_HOME_ENV)
    if h:
        return h
    base = os.environ.get("XDG_CACHE_HOME")
    if not base:
        try:
            base = str(Path.home() / ".cache")
        except RuntimeError:
            return "." + APP_NAME
    return os.path.join(base, APP_NAME)


def find_chart_directory(top: str) -> str:
    """
    Return the directory holding the shortest Chart.yaml path under `top`.

    Raises:
        FileNotFoundError: if there is no Chart.yaml at all
    """
    found: List[str] = []
    for dirpath, _dirnames, filenames in os.walk(top):
        if CHART_FILE in filenames:
            found.append(os.path.join(dirpath, CHART_FILE))
    if not found:
        raise FileNotFoundError(f"no {CHART_FILE} found under {top}")
    found.sort()
    return os.path.dirname(found[0])


@dataclass(frozen=True)
class CacheEntry:
    name: str
    size_bytes: int


def _dir_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


class ChartCache:
    """On-disk chart cache with cross-process pull deduplication."""

    def __init__(
        self,
        root: str | Path | None = None,
        fs: Optional[FileSystem] = None,
        console: Optional[Console] = None,
    ):
        self.root = Path(root) if root is not None else Path(cache_dir())
        self.fs = fs or default_filesystem()
        self.console = console or Console()
        # destination -> number of pulls this process ran
        self._pulls: dict[str, int] = {}
        self._pulls_mu = threading.Lock()

    # ---- lookup ----
    def has_chart(self, destination: str) -> bool:
        if not self.fs.directory_exists(destination):
            return False
        try:
            find_chart_directory(destination)
        except FileNotFoundError:
            return False
        return True

    # ---- double-checked pull ----
    def ensure(
        self,
        destination: str,
        pull: Callable[[], None],
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Make sure `destination` holds a chart, calling `pull` at most once
        across every thread and process racing on the same path.

        Args:
            destination: Directory the chart is pulled into
            pull: Populates `destination`; exceptions propagate
            timeout: Seconds to wait for the lock; None waits forever

        Returns:
            True if this call ran `pull`, False if the chart was already there.

        Raises:
            LockTimeoutError: if the lock was not acquired within `timeout`
        """
        if self.has_chart(destination):
            self.console.print_debug(f"chart already exists at {destination}")
            return False

        lock_path = destination.rstrip("/\\") + ".lock"
        Path(lock_path).parent.mkdir(parents=True, exist_ok=True)

        # FileLock is re-entrant per instance; never share one across calls
        lock = FileLock(lock_path, timeout=-1 if timeout is None else timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise LockTimeoutError(lock_path, timeout or 0) from e

        try:
            if self.has_chart(destination):
                self.console.print_debug(f"chart pulled concurrently into {destination}")
                return False
            self.console.print_debug(f"pulling chart into {destination}")
            pull()
            with self._pulls_mu:
                self._pulls[destination] = self._pulls.get(destination, 0) + 1
            return True
        finally:
            lock.release()

    def pull_count(self, destination: str) -> int:
        with self._pulls_mu:
            return self._pulls.get(destination, 0)

    # ---- maintenance ----
    def info(self) -> List[CacheEntry]:
        if not self.root.is_dir():
            return []
        return [
            CacheEntry(name=p.name, size_bytes=_dir_size(p))
            for p in sorted(self.root.iterdir())
            if not p.name.endswith(".lock")
        ]

    def cleanup(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)

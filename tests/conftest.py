"""Shared fixtures: a recording helm runner and a captured console."""

from __future__ import annotations

import io
import subprocess
import threading
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from chartfleet.helmexec import HelmExec
from chartfleet.ui.console import Console


class FakeRunner:
    """
    Stands in for subprocess.run.

    Every command is recorded. Responses are matched on the argument prefix
    (without the binary); the most recently registered match wins.
    """

    def __init__(self, version: str = "v3.14.2+gc309b6f"):
        self.calls: List[List[str]] = []
        self.handlers: list = []
        self.version = version
        self._mu = threading.Lock()

    def on(
        self,
        *prefix: str,
        rc: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        self.handlers.append((list(prefix), rc, stdout, stderr, effect))

    def __call__(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        with self._mu:
            self.calls.append(list(cmd))
        args = list(cmd[1:])
        for prefix, rc, out, err, effect in reversed(self.handlers):
            if args[: len(prefix)] == prefix:
                if effect is not None:
                    effect(args)
                return subprocess.CompletedProcess(cmd, rc, out, err)
        if args[:1] == ["version"]:
            return subprocess.CompletedProcess(cmd, 0, self.version, "")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def commands(self, *prefix: str) -> List[List[str]]:
        with self._mu:
            return [c[1:] for c in self.calls if c[1 : 1 + len(prefix)] == list(prefix)]


def write_chart(path: Path, name: str = "app", version: str = "0.1.0") -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / "Chart.yaml").write_text(f"apiVersion: v2\nname: {name}\nversion: {version}\n")
    return path


def untar_into_destination(args: List[str]) -> None:
    """Effect for `helm pull --destination <d> --untar`: drop a chart under <d>."""
    dest = Path(args[args.index("--destination") + 1])
    name = args[1].split("@")[0].rstrip("/").split("/")[-1]
    write_chart(dest / name, name=name)


@pytest.fixture
def out() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def err() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def console(out: io.StringIO, err: io.StringIO) -> Console:
    return Console(debug=True, out=out, err=err)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def helm(console: Console, runner: FakeRunner) -> HelmExec:
    return HelmExec(console, run=runner)

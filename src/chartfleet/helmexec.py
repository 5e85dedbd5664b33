# helmexec.py
from __future__ import annotations

import os
import re
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from .oci import parse_oci_chart_ref
from .ui.console import Console


@dataclass
class HelmError(Exception):
    """A helm invocation exited non-zero."""
    cmd: List[str]
    exit_code: int
    stderr: str = ""
    stdout: str = ""

    def __str__(self) -> str:
        msg = f"command {' '.join(self.cmd)!r} exited with status {self.exit_code}"
        if self.stderr.strip():
            msg += f":\n{self.stderr.strip()}"
        return msg


_VERSION_RE = re.compile(r"v?(\d+)\.(\d+)\.(\d+)")


def parse_version(text: str) -> Tuple[int, int, int]:
    m = _VERSION_RE.search(text)
    if not m:
        raise ValueError(f"unable to parse helm version from {text!r}")
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def _split_oci_tag(qualified: str) -> Tuple[str, str]:
    """"reg/charts/app:1.0@sha256:ab" -> ("oci://reg/charts/app@sha256:ab", "1.0")."""
    base, tag, digest = parse_oci_chart_ref(qualified)
    url = f"oci://{base}"
    return (f"{url}@{digest}" if digest else url), tag


@dataclass
class HelmExec:
    """
    Thin wrapper around the helm binary.

    Every call runs synchronously and raises HelmError on a non-zero exit.
    The output is kept out of the console unless debug is enabled.
    """
    console: Console
    helm_binary: str = "helm"
    extra_args: List[str] = field(default_factory=list)
    run: Callable[..., subprocess.CompletedProcess] = subprocess.run

    _version: Optional[Tuple[int, int, int]] = field(default=None, init=False, repr=False)
    _version_mu: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    # ---- plumbing ----
    def exec(self, args: Sequence[str], cwd: Optional[str] = None) -> str:
        cmd = [self.helm_binary, *args, *self.extra_args]
        self.console.print_debug(f"exec: {' '.join(cmd)}")
        proc = self.run(
            cmd,
            cwd=cwd,
            env=os.environ.copy(),
            text=True,
            capture_output=True,
        )
        if proc.stdout:
            self.console.print_debug(f"exec: {self.helm_binary}: {proc.stdout.rstrip()}")
        if proc.returncode != 0:
            raise HelmError(
                cmd=cmd,
                exit_code=proc.returncode,
                stderr=(proc.stderr or "")[-4000:],
                stdout=(proc.stdout or "")[-4000:],
            )
        return proc.stdout or ""

    @staticmethod
    def _context_flags(kube_context: str, namespace: str = "") -> List[str]:
        flags: List[str] = []
        if kube_context:
            flags += ["--kube-context", kube_context]
        if namespace:
            flags += ["--namespace", namespace]
        return flags

    # ---- version ----
    def version(self) -> Tuple[int, int, int]:
        with self._version_mu:
            if self._version is None:
                out = self.exec(["version", "--short"])
                self._version = parse_version(out)
            return self._version

    def is_version_at_least(self, version: str) -> bool:
        return self.version() >= parse_version(version)

    # ---- repositories ----
    def add_repo(
        self,
        name: str,
        url: str,
        username: str = "",
        password: str = "",
        oci: bool = False,
    ) -> None:
        if oci:
            if username and password:
                self.registry_login(url.split("/")[0], username, password)
            return
        args = ["repo", "add", name, url, "--force-update"]
        if username and password:
            args += ["--username", username, "--password", password]
        self.console.print_info(f'Adding repo {name} {url}')
        self.exec(args)

    def update_repo(self) -> None:
        self.console.print_info("Updating repo")
        self.exec(["repo", "update"])

    def registry_login(self, host: str, username: str, password: str) -> None:
        self.console.print_info(f"Logging in to registry {host}")
        self.exec(["registry", "login", host, "--username", username, "--password", password])

    # ---- charts ----
    def build_deps(self, name: str, chart: str, *flags: str) -> None:
        self.console.print_info(f'Building dependency release={name}, chart={chart}')
        self.exec(["dependency", "build", chart, *flags])

    def update_deps(self, chart: str) -> None:
        self.console.print_info(f"Updating dependency {chart}")
        self.exec(["dependency", "update", chart])

    def chart_pull(self, qualified: str, path: str, *flags: str) -> None:
        url, tag = _split_oci_tag(qualified)
        args = ["pull", url]
        if tag:
            args += ["--version", tag]
        args += ["--destination", path, "--untar", *flags]
        self.console.print_info(f"Pulling {qualified}")
        self.exec(args)

    def fetch(self, chart: str, *flags: str) -> None:
        self.console.print_info(f"Fetching {chart}")
        self.exec(["fetch", chart, *flags])

    # ---- releases ----
    def sync_release(self, kube_context: str, namespace: str, name: str, chart: str, *flags: str) -> None:
        self.console.print_info(f"Upgrading release={name}, chart={chart}")
        self.exec(["upgrade", "--install", name, chart, *self._context_flags(kube_context, namespace), *flags])

    def diff_release(
        self,
        kube_context: str,
        namespace: str,
        name: str,
        chart: str,
        detailed_exit_code: bool,
        *flags: str,
    ) -> str:
        self.console.print_info(f"Comparing release={name}, chart={chart}")
        args = ["diff", "upgrade", "--allow-unreleased", name, chart]
        if detailed_exit_code:
            args.append("--detailed-exitcode")
        return self.exec([*args, *self._context_flags(kube_context, namespace), *flags])

    def template_release(self, namespace: str, name: str, chart: str, *flags: str) -> str:
        self.console.print_debug(f"Templating release={name}, chart={chart}")
        return self.exec(["template", name, chart, *self._context_flags("", namespace), *flags])

    def lint(self, name: str, chart: str, *flags: str) -> str:
        self.console.print_info(f"Linting release={name}, chart={chart}")
        return self.exec(["lint", chart, *flags])

    def delete_release(self, kube_context: str, namespace: str, name: str, *flags: str) -> None:
        self.console.print_info(f"Deleting {name}")
        self.exec(["uninstall", name, *self._context_flags(kube_context, namespace), *flags])

    def test_release(self, kube_context: str, namespace: str, name: str, *flags: str) -> None:
        self.console.print_info(f"Testing {name}")
        self.exec(["test", name, *self._context_flags(kube_context, namespace), *flags])

    def release_status(self, kube_context: str, namespace: str, name: str, *flags: str) -> str:
        self.console.print_info(f"Getting status {name}")
        return self.exec(["status", name, *self._context_flags(kube_context, namespace), *flags])

    def list_releases(self, kube_context: str, namespace: str, name: str) -> List[str]:
        out = self.exec([
            "list",
            "--filter", f"^{re.escape(name)}$",
            "--uninstalling", "--deployed", "--failed", "--pending",
            "--short",
            *self._context_flags(kube_context, namespace),
        ])
        return [line.strip() for line in out.splitlines() if line.strip()]

# operations.py
from __future__ import annotations

import os
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .chartify import Chartifier
from .dag import plan_releases
from .fs import FileSystem, default_filesystem
from .helmexec import HelmError, HelmExec
from .model import PrepareChartKey, Release
from .prepare import (
    ChartPrepareOptions,
    ChartPreparer,
    ChartResolver,
    chart_version_flags,
    is_local_chart,
    normalize_chart,
    should_skip_repos,
)
from .runner import print_batches, print_dag, with_batches
from .selector import LabelFilter, check_duplicates, condition_enabled, releases_with_labels, select_releases
from .state import ReleaseState
from .ui.console import Console
from .values import Cleanup, generate_temp_files


@dataclass
class RunOptions:
    """Flags shared by every batch operation."""
    selectors: List[str] = field(default_factory=list)
    concurrency: int = 0
    include_needs: bool = False
    include_transitive_needs: bool = False
    skip_needs: bool = False
    skip_deps: bool = False
    skip_refresh: bool = False
    skip_repos: bool = False
    skip_cleanup: bool = False
    values: List[str] = field(default_factory=list)
    set: List[str] = field(default_factory=list)
    args: List[str] = field(default_factory=list)
    detailed_exitcode: bool = False
    output_dir: str = ""
    lock_timeout: Optional[float] = None


def gather_username_password(repo_name: str, username: str | None, password: str | None) -> tuple[str, str]:
    """Credentials from the state, else from <REPO_NAME>_USERNAME / _PASSWORD."""
    env_name = repo_name.replace("-", "_").upper()
    user = username or os.environ.get(f"{env_name}_USERNAME", "")
    pw = password or os.environ.get(f"{env_name}_PASSWORD", "")
    return user, pw


def _flatten(groups: List[List[Release]]) -> List[Release]:
    return [r for g in groups for r in g]


class Run:
    """
    One invocation of a batch operation against a loaded state.

    Operations plan the selected releases into groups, prepare their charts
    and then hand each group to helm with bounded concurrency.
    """

    def __init__(
        self,
        state: ReleaseState,
        helm: HelmExec,
        console: Console,
        fs: Optional[FileSystem] = None,
        preparer: Optional[ChartPreparer] = None,
    ):
        self.state = state
        self.helm = helm
        self.console = console
        self.fs = fs or default_filesystem()
        self.preparer = preparer or ChartPreparer(
            helm,
            ChartResolver(
                helm,
                state.base_path,
                console,
                repositories=state.repositories,
                defaults=state.defaults,
                fs=self.fs,
            ),
            Chartifier(helm, console, fs=self.fs),
            console,
        )

    # ---- selection / planning ----
    def selected(self, opts: RunOptions) -> List[Release]:
        releases = select_releases(
            self.state.releases,
            opts.selectors,
            values=self.state.values,
            common_labels=self.state.common_labels,
            include_transitive_needs=opts.include_transitive_needs,
        )
        check_duplicates(releases)
        return releases

    def plan(
        self,
        opts: RunOptions,
        selected: Sequence[Release],
        reverse: bool = False,
        skip_needs: Optional[bool] = None,
    ) -> List[List[Release]]:
        only = None if len(selected) == len(self.state.releases) else selected
        return plan_releases(
            self.state.releases,
            selected=only,
            include_needs=opts.include_needs or opts.include_transitive_needs,
            skip_needs=opts.skip_needs if skip_needs is None else skip_needs,
            reverse=reverse,
        )

    # ---- repositories ----
    def sync_repos(self) -> List[str]:
        updated: List[str] = []
        plain = False
        for repo in self.state.repositories:
            user, pw = gather_username_password(repo.name, repo.username, repo.password)
            self.helm.add_repo(repo.name, repo.url, user, pw, oci=repo.oci)
            plain = plain or not repo.oci
            updated.append(repo.name)
        if plain:
            self.helm.update_repo()
        return updated

    # ---- charts ----
    def prepare(
        self,
        opts: RunOptions,
        releases: Sequence[Release],
        command: str,
        force_download: bool = False,
        output_dir: str = "",
        cleanup: Optional[Cleanup] = None,
    ) -> None:
        prep = ChartPrepareOptions(
            skip_repos=opts.skip_repos,
            skip_deps=opts.skip_deps,
            skip_refresh=opts.skip_refresh,
            skip_cleanup=opts.skip_cleanup,
            force_download=force_download,
            include_transitive_needs=opts.include_transitive_needs,
            concurrency=opts.concurrency,
            output_dir=output_dir,
            values=list(opts.values),
            set=list(opts.set),
            lock_timeout=opts.lock_timeout,
            command=command,
        )
        if not should_skip_repos(prep, self.state.defaults):
            self.sync_repos()

        try:
            paths = self.preparer.prepare_charts(releases, prep, charts=cleanup)
        except Exception:
            if cleanup is not None and not opts.skip_cleanup:
                cleanup()
            raise
        for r in releases:
            key = PrepareChartKey(r.namespace, r.name, r.kube_context)
            if key in paths:
                r.chart_path = paths[key]

    def release_flags(self, release: Release, opts: RunOptions, cleanup: Cleanup) -> List[str]:
        flags = chart_version_flags(release, self.state.defaults)
        for f in generate_temp_files(release, release.values, self.state.base_path, self.fs, cleanup):
            flags += ["--values", f]
        for f in opts.values:
            flags += ["--values", f]
        for s in opts.set:
            flags += ["--set", s]
        return flags + list(self.state.defaults.args) + list(opts.args)

    def _run_batches(
        self,
        groups: List[List[Release]],
        opts: RunOptions,
        operation: str,
        do: Callable[[Release, Cleanup], None],
        results: Optional[Dict[str, str]] = None,
        cleanup: Optional[Cleanup] = None,
    ) -> None:
        cleanup = cleanup or Cleanup(self.fs, self.console)
        mu = threading.Lock()

        def _do(r: Release) -> None:
            self.console.print_release_start(operation, r.id)
            try:
                do(r, cleanup)
            except Exception as e:
                self.console.print_release_failure(r.id, str(e), getattr(e, "exit_code", None))
                if results is not None:
                    with mu:
                        results[r.id] = "failed"
                raise
            if results is not None:
                with mu:
                    results[r.id] = "ok"

        try:
            with_batches(groups, _do, self.console, concurrency=opts.concurrency, operation=operation)
        finally:
            if not opts.skip_cleanup:
                cleanup()

    def _none_matched(self) -> None:
        self.console.print_info("no releases found that match the specified selectors")

    def _installed(self, r: Release) -> bool:
        return bool(self.helm.list_releases(r.kube_context, r.namespace, r.name))

    # ---- operations ----
    def sync(self, opts: RunOptions, releases: Optional[Sequence[Release]] = None) -> Dict[str, str]:
        """
        Install or upgrade every selected desired release, group by group.

        Selected releases marked `installed: false` are uninstalled when
        helm still knows them.
        """
        selected = list(releases) if releases is not None else self.selected(opts)
        if not selected:
            self._none_matched()
            return {}

        groups = self.plan(opts, selected, skip_needs=True if releases is not None else None)
        cleanup = Cleanup(self.fs, self.console)
        self.prepare(opts, _flatten(groups), "sync", cleanup=cleanup)

        def do(r: Release, cleanup: Cleanup) -> None:
            if not r.desired():
                if self._installed(r):
                    self.helm.delete_release(r.kube_context, r.namespace, r.name)
                return
            flags = self.release_flags(r, opts, cleanup)
            self.helm.sync_release(r.kube_context, r.namespace, r.name, r.chart_path_or_name(), *flags)

        results: Dict[str, str] = {}
        try:
            self._run_batches(groups, opts, "sync", do, results, cleanup)
        finally:
            self.console.print_results(results)
        return results

    def diff(self, opts: RunOptions) -> List[Release]:
        """
        Show what a sync would change.

        Returns:
            The releases with pending changes (helm exit code 2).
        """
        selected = self.selected(opts)
        if not selected:
            self._none_matched()
            return []

        groups = self.plan(opts, selected)
        cleanup = Cleanup(self.fs, self.console)
        self.prepare(opts, _flatten(groups), "diff", cleanup=cleanup)

        changed: List[Release] = []
        mu = threading.Lock()

        def do(r: Release, cleanup: Cleanup) -> None:
            if not r.desired():
                if self._installed(r):
                    self.console.print_info(f"release {r.id} would be deleted")
                    with mu:
                        changed.append(r)
                return
            flags = self.release_flags(r, opts, cleanup)
            try:
                out = self.helm.diff_release(
                    r.kube_context, r.namespace, r.name, r.chart_path_or_name(), True, *flags
                )
            except HelmError as e:
                if e.exit_code != 2:
                    raise
                out = e.stdout
                with mu:
                    changed.append(r)
            if out.strip():
                self.console.print_info(out.rstrip())

        self._run_batches(groups, opts, "diff", do, cleanup=cleanup)

        # declaration order
        order = {id(r): i for i, r in enumerate(self.state.releases)}
        changed.sort(key=lambda r: order.get(id(r), 0))
        return changed

    def apply(self, opts: RunOptions) -> Dict[str, str]:
        """Diff, then sync only the releases that have changes."""
        changed = self.diff(opts)
        if not changed:
            self.console.print_info("No affected releases")
            return {}
        return self.sync(opts, releases=changed)

    def destroy(self, opts: RunOptions) -> Dict[str, str]:
        """Uninstall every selected release, dependents before their dependencies."""
        selected = self.selected(opts)
        if not selected:
            self._none_matched()
            return {}
        groups = self.plan(opts, selected, reverse=True)

        def do(r: Release, cleanup: Cleanup) -> None:
            if not self._installed(r):
                self.console.print_info(f"release {r.id} is not installed")
                return
            self.helm.delete_release(r.kube_context, r.namespace, r.name)

        results: Dict[str, str] = {}
        try:
            self._run_batches(groups, opts, "destroy", do, results)
        finally:
            self.console.print_results(results)
        return results

    def _buffered(
        self,
        opts: RunOptions,
        operation: str,
        render: Callable[[Release, Cleanup], str],
        prepare_charts: bool = True,
    ) -> None:
        selected = [r for r in self.selected(opts) if r.desired()]
        if not selected:
            self._none_matched()
            return
        groups = self.plan(opts, selected)

        with tempfile.TemporaryDirectory(prefix=f"chartfleet-{operation}-") as tmp:
            cleanup = Cleanup(self.fs, self.console)
            if prepare_charts:
                self.prepare(
                    opts, _flatten(groups), operation, force_download=True, output_dir=tmp, cleanup=cleanup
                )

            # workers finish in any order; replay output in declaration order
            out: Dict[int, str] = {}
            mu = threading.Lock()

            def do(r: Release, cleanup: Cleanup) -> None:
                text = render(r, cleanup)
                with mu:
                    out[id(r)] = text

            try:
                self._run_batches(groups, opts, operation, do, cleanup=cleanup)
            finally:
                for r in self.state.releases:
                    text = out.get(id(r), "")
                    if text.strip():
                        self.console.print_info(text.rstrip())

    def template(self, opts: RunOptions) -> None:
        def render(r: Release, cleanup: Cleanup) -> str:
            flags = self.release_flags(r, opts, cleanup)
            if r.kube_context:
                flags += ["--kube-context", r.kube_context]
            return self.helm.template_release(r.namespace, r.name, r.chart_path_or_name(), *flags)

        self._buffered(opts, "template", render)

    def lint(self, opts: RunOptions) -> None:
        def render(r: Release, cleanup: Cleanup) -> str:
            flags = self.release_flags(r, opts, cleanup)
            return self.helm.lint(r.name, r.chart_path_or_name(), *flags)

        self._buffered(opts, "lint", render)

    def status(self, opts: RunOptions) -> None:
        def render(r: Release, cleanup: Cleanup) -> str:
            return self.helm.release_status(r.kube_context, r.namespace, r.name, *opts.args)

        self._buffered(opts, "status", render, prepare_charts=False)

    def test(self, opts: RunOptions) -> None:
        selected = [r for r in self.selected(opts) if r.desired()]
        if not selected:
            self._none_matched()
            return
        groups = self.plan(opts, selected)

        def do(r: Release, cleanup: Cleanup) -> None:
            self.helm.test_release(r.kube_context, r.namespace, r.name, *opts.args)

        self._run_batches(groups, opts, "test", do)

    def fetch(self, opts: RunOptions) -> Dict[str, str]:
        """Download every selected chart into `opts.output_dir`."""
        if not opts.output_dir:
            raise ValueError("fetch requires an output directory")
        selected = [r for r in self.selected(opts) if r.desired()]
        self.prepare(opts, selected, "fetch", force_download=True, output_dir=opts.output_dir)
        fetched = {r.id: r.chart_path_or_name() for r in selected}
        self.console.print_table(["RELEASE", "CHART"], [[k, v] for k, v in fetched.items()])
        return fetched

    def deps(self, opts: RunOptions) -> List[str]:
        """`helm dependency update` every selected local chart, one at a time."""
        if not opts.skip_repos:
            self.sync_repos()
        updated: List[str] = []
        for r in self.selected(opts):
            path = normalize_chart(self.state.base_path, r.chart)
            if not is_local_chart(r.chart) or not self.fs.directory_exists(path):
                continue
            if path in updated:
                continue
            self.helm.update_deps(path)
            updated.append(path)
        return updated

    def repos(self) -> List[str]:
        return self.sync_repos()

    def list_releases(self, opts: RunOptions) -> None:
        filters = [LabelFilter.parse(s) for s in opts.selectors]
        labeled = releases_with_labels(self.state.releases, self.state.common_labels)
        rows = []
        for orig, r in zip(self.state.releases, labeled):
            if filters and not any(f.match(r) for f in filters):
                continue
            labels = ",".join(f"{k}:{v}" for k, v in sorted(orig.labels.items()))
            rows.append([
                orig.name,
                orig.namespace,
                str(condition_enabled(orig, self.state.values)).lower(),
                str(orig.desired()).lower(),
                labels,
                orig.chart,
                orig.version,
            ])
        self.console.print_table(
            ["NAME", "NAMESPACE", "ENABLED", "INSTALLED", "LABELS", "CHART", "VERSION"], rows
        )

    def show_dag(self, opts: RunOptions, batches: bool = False) -> List[List[Release]]:
        selected = self.selected(opts)
        if not selected:
            self._none_matched()
            return []
        groups = self.plan(opts, selected)
        if batches:
            print_batches(groups, self.console)
        else:
            print_dag(groups, self.console)
        return groups

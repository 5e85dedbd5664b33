# prepare.py
from __future__ import annotations

import os
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .cache import ChartCache, find_chart_directory
from .chartify import Chartifier, prepare_chartify
from .fs import FileSystem, default_filesystem
from .helmexec import HelmError, HelmExec
from .model import ChartPrepareResult, HelmDefaults, PrepareChartKey, Release, Repository
from .oci import is_development, oci_chart_path, oci_qualified_chart_name
from .remote import InvalidURLError, Remote, RemoteFetchError
from .runner import ReleaseError, ReleaseErrors, scatter_gather
from .ui.console import Console
from .values import Cleanup


class ChartResolveError(Exception):
    pass


class DependencyBuildError(Exception):
    pass


@dataclass
class ChartPrepareOptions:
    """Runtime switches of one chart preparation pass."""
    skip_repos: bool = False
    skip_deps: bool = False
    skip_refresh: bool = False
    skip_cleanup: bool = False
    force_download: bool = False
    include_transitive_needs: bool = False
    include_crds: bool = True
    concurrency: int = 0
    output_dir: str = ""
    override_chart: str = ""
    values: List[str] = field(default_factory=list)
    set: List[str] = field(default_factory=list)
    lock_timeout: Optional[float] = None
    command: str = ""


# ----------------------------------------------------------------------
# Chart name helpers
# ----------------------------------------------------------------------

def is_local_chart(chart: str) -> bool:
    """
    True unless `chart` looks like "repo/chart" (or "repo/chart/sub") or a URL.

    "./x" and "../x" are always local, as are bare names, absolute paths and
    anything with more than three path segments.
    """
    if chart.startswith(("." + os.sep, ".." + os.sep)):
        return True
    if "://" in chart:
        return False
    segments = len(chart.split("/"))
    return (
        chart == ""
        or os.path.isabs(chart)
        or "/" not in chart
        or (segments != 2 and segments != 3)
    )


def resolve_remote_chart(repo_and_chart: str) -> Tuple[str, str, bool]:
    """Split "repo/chart" into ("repo", "chart", True); ("", "", False) otherwise."""
    if is_local_chart(repo_and_chart) or "://" in repo_and_chart:
        return "", "", False
    repo, _, chart = repo_and_chart.partition("/")
    return repo, chart, True


def normalize_chart(base_path: str, chart: str) -> str:
    """Resolve local chart paths against `base_path`; repository references pass through."""
    if not is_local_chart(chart) or os.path.isabs(chart):
        return chart
    return os.path.join(base_path, chart)


def chart_version_flags(release: Release, defaults: HelmDefaults) -> List[str]:
    flags: List[str] = []
    if release.version:
        flags += ["--version", release.version]
    if is_development(release, defaults):
        flags.append("--devel")
    return flags


def generate_chart_path(chart_name: str, output_dir: str, release: Release) -> str:
    """<output>/[ns]/[ctx]/<name>/<chart>/<version|latest>"""
    elems = [output_dir]
    if release.namespace:
        elems.append(release.namespace)
    if release.kube_context:
        elems.append(release.kube_context)
    elems += [release.name, chart_name, release.version or "latest"]
    return os.path.join(*elems)


# ----------------------------------------------------------------------
# Skip policy
# ----------------------------------------------------------------------

def resolve_skip_deps(
    release: Release,
    defaults: HelmDefaults,
    opts: ChartPrepareOptions,
    is_local: bool,
    fetched_remotely: bool,
) -> bool:
    """
    Whether `helm dependency build` is skipped for `release`.

    A chart that is neither local nor fetched remotely is resolved by helm
    itself and never gets a dependency build.
    """
    if not is_local and not fetched_remotely:
        return True
    if opts.skip_deps:
        return True
    if release.skip_deps is not None:
        return release.skip_deps
    return defaults.skip_deps


def resolve_skip_refresh(
    release: Release,
    defaults: HelmDefaults,
    opts: ChartPrepareOptions,
    is_local: bool,
) -> bool:
    """Global flag, then the release override, then the shared default, then "not local"."""
    if opts.skip_refresh:
        return True
    if release.skip_refresh is not None:
        return release.skip_refresh
    if defaults.skip_refresh:
        return True
    return not is_local


def should_skip_repos(opts: ChartPrepareOptions, defaults: HelmDefaults) -> bool:
    return opts.skip_repos or defaults.skip_deps or defaults.skip_refresh


# ----------------------------------------------------------------------
# Resolving
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedChart:
    path: str
    is_local: bool = False
    fetched_remotely: bool = False


class ChartResolver:
    """
    Finds where a release's chart comes from and brings it onto disk.

    Order: remote source, then OCI registry, then local directory. Plain
    repository references are left to helm unless a download is forced.
    """

    def __init__(
        self,
        helm: HelmExec,
        base_dir: str,
        console: Console,
        repositories: Sequence[Repository] = (),
        defaults: Optional[HelmDefaults] = None,
        fs: Optional[FileSystem] = None,
        remote: Optional[Remote] = None,
        cache: Optional[ChartCache] = None,
    ):
        self.helm = helm
        self.base_dir = base_dir
        self.console = console
        self.repositories = list(repositories)
        self.defaults = defaults or HelmDefaults()
        self.fs = fs or default_filesystem()
        self.cache = cache or ChartCache(fs=self.fs, console=console)
        self.remote = remote or Remote(console, home=str(self.cache.root), fs=self.fs)

    def resolve(self, release: Release, opts: Optional[ChartPrepareOptions] = None) -> ResolvedChart:
        """
        Raises:
            ChartResolveError: a remote source could not be fetched
            OCIVersionError: the OCI version resolves to the "latest" tag
            LockTimeoutError, HelmError: the OCI pull failed
        """
        opts = opts or ChartPrepareOptions()
        chart_name = release.chart

        path = self.fetch_remote(release)
        fetched_remotely = path != chart_name

        if not fetched_remotely:
            oci_path = self.fetch_oci(release, opts)
            if oci_path is not None:
                path = oci_path

        is_local = self.fs.directory_exists(normalize_chart(self.base_dir, chart_name))
        return ResolvedChart(path=path, is_local=is_local, fetched_remotely=fetched_remotely)

    # ---- remote ----
    def fetch_remote(self, release: Release) -> str:
        """The fetched path for remote sources, `release.chart` unchanged otherwise."""
        chart = release.chart
        elems = [p for p in (release.namespace, release.kube_context) if p] + [release.name]
        try:
            return self.remote.fetch(chart, os.path.join(*elems))
        except InvalidURLError as e:
            if release.force_go_getter:
                raise ChartResolveError(
                    f'parsing url from chart failed due to error "{e}"'
                ) from e
            return chart
        except RemoteFetchError as e:
            raise ChartResolveError(f'fetching "{chart}": {e}') from e

    # ---- oci ----
    def fetch_oci(self, release: Release, opts: ChartPrepareOptions) -> Optional[str]:
        """Pull an OCI chart into the cache, once per destination. None for other charts."""
        oci = oci_qualified_chart_name(
            release, self.repositories, self.defaults, self.helm.is_version_at_least
        )
        if oci is None:
            return None

        root = opts.output_dir or str(self.cache.root)
        dest = oci_chart_path(root, release, oci.chart_name, oci.path_version)

        flags = ["--devel"] if is_development(release, self.defaults) else []
        self.cache.ensure(
            dest,
            lambda: self.helm.chart_pull(oci.pull_ref, dest, *flags),
            timeout=opts.lock_timeout,
        )
        return find_chart_directory(dest)

    # ---- forced download ----
    def download(self, release: Release, chart_name: str, output_dir: str) -> str:
        path = generate_chart_path(chart_name, output_dir, release)
        if not self.fs.directory_exists(path):
            flags = chart_version_flags(release, self.defaults)
            flags += ["--untar", "--untardir", path]
            self.helm.fetch(chart_name, *flags)
        else:
            self.console.print_info(
                f'"{chart_name}" has not been downloaded because the output directory "{path}" already exists'
            )

        try:
            return find_chart_directory(path)
        except FileNotFoundError:
            return path


# ----------------------------------------------------------------------
# Preparing
# ----------------------------------------------------------------------

def releases_need_charts(releases: Sequence[Release]) -> List[Release]:
    return [r for r in releases if r.desired()]


class ChartPreparer:
    """Resolves, transforms and dependency-builds the charts of a set of releases."""

    def __init__(
        self,
        helm: HelmExec,
        resolver: ChartResolver,
        chartifier: Chartifier,
        console: Console,
    ):
        self.helm = helm
        self.resolver = resolver
        self.chartifier = chartifier
        self.console = console

    @property
    def fs(self) -> FileSystem:
        return self.resolver.fs

    @property
    def base_dir(self) -> str:
        return self.resolver.base_dir

    @property
    def defaults(self) -> HelmDefaults:
        return self.resolver.defaults

    def prepare_one(
        self,
        release: Release,
        opts: ChartPrepareOptions,
        cleanup: Cleanup,
        output_dir: str = "",
        charts: Optional[Cleanup] = None,
    ) -> ChartPrepareResult:
        if opts.override_chart:
            release.chart = opts.override_chart

        chart_name = release.chart
        resolved = self.resolver.resolve(release, opts)
        chart_path = resolved.path

        chartification = prepare_chartify(
            release, chart_path, self.base_dir, self.fs, self.console, cleanup
        )

        skip_deps = resolve_skip_deps(
            release, self.defaults, opts, resolved.is_local, resolved.fetched_remotely
        )
        build_deps = False

        normalized = normalize_chart(self.base_dir, chart_path)
        if chartification is not None and opts.command != "pull":
            chartification.skip_deps = chartification.skip_deps or skip_deps
            chartification.include_crds = opts.include_crds
            chartification.values_files = list(opts.values) + chartification.values_files
            for s in opts.set:
                chartification.set_flags += ["--set", s]

            src = normalized if self.fs.directory_exists(normalized) else chart_path
            chart_path = self.chartifier.chartify(release.name, src, chartification, charts)
            build_deps = not skip_deps
        elif self.fs.directory_exists(normalized):
            # a local chart, or a remote one fetched into the cache
            chart_path = normalized
            build_deps = not skip_deps
        elif opts.force_download:
            chart_path = self.resolver.download(release, chart_name, output_dir)

        return ChartPrepareResult(
            release_name=release.name,
            release_namespace=release.namespace,
            release_context=release.kube_context,
            chart_name=chart_name,
            chart_path=chart_path,
            build_deps=build_deps,
            skip_refresh=resolve_skip_refresh(release, self.defaults, opts, resolved.is_local),
            chart_fetched_remotely=resolved.fetched_remotely,
        )

    def prepare_charts(
        self,
        releases: Sequence[Release],
        opts: Optional[ChartPrepareOptions] = None,
        charts: Optional[Cleanup] = None,
    ) -> Dict[PrepareChartKey, str]:
        """
        Prepare the chart of every desired release in parallel.

        Every release is attempted; failures do not stop siblings. Dependency
        builds run serially once every chart is ready.

        Directories holding the prepared charts (chartify output, forced
        downloads into a fresh temp dir) must outlive this call. They are
        registered on `charts` so the caller can drop them once the charts
        have been used; without it the caller owns them.

        Returns:
            The local chart path (or untouched chart reference) per release key.

        Raises:
            ReleaseErrors: if any release could not be prepared
            DependencyBuildError: if a local chart's dependency build failed
        """
        opts = opts or ChartPrepareOptions()
        targets = releases_need_charts(releases)

        output_dir = opts.output_dir
        if opts.force_download and not output_dir:
            output_dir = tempfile.mkdtemp(prefix="chartfleet-charts-")
            if charts is not None:
                charts.add_tree(output_dir)

        info: Dict[PrepareChartKey, str] = {}
        info_mu = threading.Lock()
        errors: List[ReleaseError] = []
        builds: List[ChartPrepareResult] = []
        cleanups: List[Cleanup] = []

        def produce(submit) -> None:
            for r in targets:
                submit(r)

        def consume(worker_id: int, jobs: Iterator[Release], emit) -> None:
            for release in jobs:
                cleanup = Cleanup(self.fs, self.console)
                with info_mu:
                    cleanups.append(cleanup)
                try:
                    emit(self.prepare_one(release, opts, cleanup, output_dir, charts))
                except Exception as e:
                    self.console.print_debug(f"worker {worker_id}: {release.id}: {e}")
                    emit(ChartPrepareResult(
                        release_name=release.name,
                        release_namespace=release.namespace,
                        release_context=release.kube_context,
                        chart_name=release.chart,
                        error=e,
                    ))

        def aggregate(results: Iterator[Any]) -> None:
            for res in results:
                if res.error is not None:
                    errors.append(ReleaseError(res.release_name, res.error))
                    continue
                with info_mu:
                    info[res.key] = res.chart_path
                if res.build_deps:
                    builds.append(res)

        try:
            scatter_gather(opts.concurrency, len(targets), produce, consume, aggregate)
        finally:
            if not opts.skip_cleanup:
                for c in cleanups:
                    c()

        if errors:
            raise ReleaseErrors(errors)

        if builds:
            run_dep_builds(self.helm, builds, self.console)

        return info


# ----------------------------------------------------------------------
# Dependency builds
# ----------------------------------------------------------------------

def run_dep_builds(helm: HelmExec, builds: Sequence[ChartPrepareResult], console: Console) -> None:
    """
    Run `helm dependency build` for each result, strictly one at a time.

    helm fails intermittently when dependency builds run concurrently, even
    on different charts.

    Raises:
        DependencyBuildError: on the first failing local chart
    """
    for r in builds:
        flags = ["--skip-refresh"] if r.skip_refresh else []
        try:
            helm.build_deps(r.release_name, r.chart_path, *flags)
        except HelmError as e:
            if r.chart_fetched_remotely:
                console.print_warning(
                    f"`helm dep build` failed. While processing release \"{r.release_name}\", "
                    f"chartfleet observed that remote chart \"{r.chart_name}\" is seemingly broken. "
                    "One of well-known causes of this is that the chart has outdated Chart.lock, "
                    "which needs the chart maintainer to run `helm dep up`. "
                    "chartfleet is tolerating the error to avoid blocking you until the remote chart gets fixed. "
                    f"But this may result in any failure later if the chart is broken badly. "
                    f"FYI, the tolerated error was: {e}"
                )
                continue
            raise DependencyBuildError(f"building dependencies of local chart: {e}") from e

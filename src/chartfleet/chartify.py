# chartify.py
from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import yaml

from .cache import CHART_FILE, find_chart_directory
from .fs import FileSystem, default_filesystem
from .helmexec import HelmExec
from .model import Release
from .ui.console import Console
from .values import Cleanup, generate_temp_files

KUSTOMIZATION_FILES = ("kustomization.yaml", "kustomization.yml", "Kustomization")


class ChartifyError(Exception):
    pass


@dataclass
class ChartDependency:
    chart: str
    version: str = ""
    alias: str = ""


@dataclass
class ChartifyOpts:
    """Everything the transformation needs to turn a source into a temporary chart."""
    id: str
    namespace: str = ""
    chart_version: str = ""
    adhoc_chart_dependencies: List[ChartDependency] = field(default_factory=list)
    json_patches: List[str] = field(default_factory=list)
    strategic_merge_patches: List[str] = field(default_factory=list)
    transformers: List[str] = field(default_factory=list)
    override_namespace: str = ""
    values_files: List[str] = field(default_factory=list)
    set_flags: List[str] = field(default_factory=list)
    skip_deps: bool = False
    include_crds: bool = True


# ----------------------------------------------------------------------
# Deciding whether to run
# ----------------------------------------------------------------------

def prepare_chartify(
    release: Release,
    chart: str,
    base_dir: str,
    fs: FileSystem,
    console: Console,
    cleanup: Cleanup,
) -> Optional[ChartifyOpts]:
    """
    Decide whether `release` needs a synthesized chart and collect its inputs.

    Every temporary file written is registered on `cleanup`, also when this
    raises midway. Returns None when the chart can be used as is.
    """
    opts = ChartifyOpts(
        id=release.id,
        namespace=release.namespace,
        chart_version=release.version,
    )
    should_run = False

    d = chart if os.path.isabs(chart) else os.path.join(base_dir, chart)
    if fs.directory_exists(d) and not fs.file_exists(os.path.join(d, CHART_FILE)):
        should_run = True

    for dep in release.dependencies:
        dep_chart = str(dep.get("chart", ""))
        local = dep_chart if os.path.isabs(dep_chart) else os.path.join(base_dir, dep_chart)
        if fs.directory_exists(local):
            # the synthesized chart lives outside base_dir
            dep_chart = fs.abs(local)
        opts.adhoc_chart_dependencies.append(
            ChartDependency(
                chart=dep_chart,
                version=str(dep.get("version", "")),
                alias=str(dep.get("alias", "")),
            )
        )
        should_run = True

    if release.json_patches:
        opts.json_patches = generate_temp_files(release, release.json_patches, base_dir, fs, cleanup)
        should_run = True

    if release.strategic_merge_patches:
        opts.strategic_merge_patches = generate_temp_files(
            release, release.strategic_merge_patches, base_dir, fs, cleanup
        )
        should_run = True

    if release.transformers:
        opts.transformers = generate_temp_files(release, release.transformers, base_dir, fs, cleanup)
        should_run = True

    if release.force_namespace:
        opts.override_namespace = release.force_namespace
        should_run = True

    if not should_run:
        return None

    console.print_debug(f"Chartify process for {d}")
    opts.values_files = generate_temp_files(release, release.values, base_dir, fs, cleanup)
    return opts


# ----------------------------------------------------------------------
# Synthesizing
# ----------------------------------------------------------------------

def _dependency_entry(dep: ChartDependency) -> Dict[str, str]:
    if os.path.isdir(dep.chart):
        entry = {"name": os.path.basename(dep.chart.rstrip("/")), "repository": f"file://{dep.chart}"}
    elif dep.chart.startswith("oci://"):
        repo, _, name = dep.chart.rpartition("/")
        entry = {"name": name, "repository": repo}
    else:
        repo, _, name = dep.chart.partition("/")
        entry = {"name": name, "repository": f"@{repo}"}
    if dep.version:
        entry["version"] = dep.version
    if dep.alias:
        entry["alias"] = dep.alias
    return entry


@dataclass
class Chartifier:
    """
    Turns manifests, Kustomizations, or existing charts plus patches into a
    temporary chart the engine can install.
    """
    helm: HelmExec
    console: Console
    kustomize_binary: str = "kustomize"
    run: Callable[..., subprocess.CompletedProcess] = subprocess.run
    tmp_root: Optional[str] = None
    fs: FileSystem = field(default_factory=default_filesystem)

    def _kustomize_build(self, d: str) -> str:
        cmd = [self.kustomize_binary, "build", d]
        self.console.print_debug(f"exec: {' '.join(cmd)}")
        proc = self.run(cmd, text=True, capture_output=True)
        if proc.returncode != 0:
            raise ChartifyError(f"kustomize build {d} failed: {(proc.stderr or '').strip()}")
        return proc.stdout

    @staticmethod
    def _write_chart_yaml(out: str, name: str, version: str) -> None:
        meta = {"apiVersion": "v2", "name": name, "version": version or "0.1.0"}
        with open(os.path.join(out, CHART_FILE), "w") as f:
            yaml.safe_dump(meta, f, sort_keys=False)

    def _materialize(self, release_name: str, src: str, work: str, opts: ChartifyOpts) -> str:
        out = os.path.join(work, release_name)
        templates = os.path.join(out, "templates")

        if os.path.isdir(src) and os.path.isfile(os.path.join(src, CHART_FILE)):
            shutil.copytree(src, out)
            return out

        if os.path.isdir(src):
            os.makedirs(templates)
            if any(os.path.isfile(os.path.join(src, k)) for k in KUSTOMIZATION_FILES):
                with open(os.path.join(templates, "all.yaml"), "w") as f:
                    f.write(self._kustomize_build(src))
            else:
                for pattern in ("*.yaml", "*.yml"):
                    for path in self.fs.glob(os.path.join(src, pattern)):
                        shutil.copy(path, templates)
            self._write_chart_yaml(out, release_name, opts.chart_version)
            return out

        # a repository or OCI chart
        fetch_dir = os.path.join(work, "fetched")
        flags = ["--untar", "--untardir", fetch_dir]
        if opts.chart_version:
            flags += ["--version", opts.chart_version]
        self.helm.fetch(src, *flags)
        shutil.copytree(find_chart_directory(fetch_dir), out)
        return out

    def _add_dependencies(self, out: str, opts: ChartifyOpts) -> None:
        chart_file = os.path.join(out, CHART_FILE)
        with open(chart_file) as f:
            meta = yaml.safe_load(f) or {}
        deps = meta.setdefault("dependencies", []) or []
        deps.extend(_dependency_entry(d) for d in opts.adhoc_chart_dependencies)
        meta["dependencies"] = deps
        with open(chart_file, "w") as f:
            yaml.safe_dump(meta, f, sort_keys=False)

        if not opts.skip_deps:
            self.helm.update_deps(out)

    def _patch(self, release_name: str, out: str, work: str, opts: ChartifyOpts) -> None:
        flags: List[str] = []
        if opts.include_crds:
            flags.append("--include-crds")
        for v in opts.values_files:
            flags += ["--values", v]
        flags += opts.set_flags
        rendered = self.helm.template_release(opts.namespace, release_name, out, *flags)

        kdir = os.path.join(work, "kustomize")
        os.makedirs(kdir)
        with open(os.path.join(kdir, "all.yaml"), "w") as f:
            f.write(rendered)

        kustomization: Dict[str, object] = {"resources": ["all.yaml"]}
        patches: List[Dict[str, object]] = []

        for p in opts.json_patches:
            with open(p) as f:
                data = yaml.safe_load(f) or {}
            patches.append({"target": data.get("target", {}), "patch": yaml.safe_dump(data.get("patch", []))})

        for i, p in enumerate(opts.strategic_merge_patches):
            name = f"strategic-merge-patch.{i}.yaml"
            shutil.copy(p, os.path.join(kdir, name))
            patches.append({"path": name})

        if patches:
            kustomization["patches"] = patches

        if opts.transformers:
            names = []
            for i, p in enumerate(opts.transformers):
                name = f"transformer.{i}.yaml"
                shutil.copy(p, os.path.join(kdir, name))
                names.append(name)
            kustomization["transformers"] = names

        if opts.override_namespace:
            kustomization["namespace"] = opts.override_namespace

        with open(os.path.join(kdir, "kustomization.yaml"), "w") as f:
            yaml.safe_dump(kustomization, f, sort_keys=False)

        built = self._kustomize_build(kdir)

        # the rendered output replaces templates, values and dependencies
        for sub in ("templates", "charts", "crds"):
            shutil.rmtree(os.path.join(out, sub), ignore_errors=True)
        for name in ("values.yaml", "Chart.lock", "requirements.yaml", "requirements.lock"):
            p = os.path.join(out, name)
            if os.path.exists(p):
                os.remove(p)
        os.makedirs(os.path.join(out, "templates"))
        with open(os.path.join(out, "templates", "patched_resources.yaml"), "w") as f:
            f.write(built)

        chart_file = os.path.join(out, CHART_FILE)
        with open(chart_file) as f:
            meta = yaml.safe_load(f) or {}
        meta.pop("dependencies", None)
        with open(chart_file, "w") as f:
            yaml.safe_dump(meta, f, sort_keys=False)

    def chartify(
        self, release_name: str, src: str, opts: ChartifyOpts, cleanup: Optional[Cleanup] = None
    ) -> str:
        """
        Build a temporary chart for `src` and return its directory.

        The work directory is registered on `cleanup` when one is given;
        otherwise the caller owns it.

        Raises:
            ChartifyError, HelmError: when a render step fails
        """
        work = tempfile.mkdtemp(prefix=f"chartify-{release_name}-", dir=self.tmp_root)
        if cleanup is not None:
            cleanup.add_tree(work)
        self.console.print_debug(f"chartify: {src} -> {work}")

        out = self._materialize(release_name, src, work, opts)

        if opts.adhoc_chart_dependencies:
            self._add_dependencies(out, opts)

        if opts.json_patches or opts.strategic_merge_patches or opts.transformers or opts.override_namespace:
            self._patch(release_name, out, work, opts)

        return out

# state.py
from __future__ import annotations

import copy
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .model import HelmDefaults, Release, Repository, reformat_need
from .ui.console import Console

MAX_TEMPLATE_ITERATIONS = 6


class StateError(Exception):
    pass


# -------------------- Schemas --------------------

class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RepositorySchema(_Schema):
    name: str
    url: str
    oci: bool = False
    username: str | None = None
    password: str | None = None


class HelmDefaultsSchema(_Schema):
    kube_context: str = Field("", alias="kubeContext")
    skip_deps: bool = Field(False, alias="skipDeps")
    skip_refresh: bool = Field(False, alias="skipRefresh")
    devel: bool = False
    args: list[str] = Field(default_factory=list)


class ReleaseSchema(_Schema):
    name: str
    chart: str = ""
    directory: str = ""
    namespace: str = ""
    kube_context: str = Field("", alias="kubeContext")
    version: str = ""
    needs: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    installed: bool | None = None
    installed_template: str | None = Field(None, alias="installedTemplate")
    condition: str = ""
    devel: bool | None = None
    skip_deps: bool | None = Field(None, alias="skipDeps")
    skip_refresh: bool | None = Field(None, alias="skipRefresh")
    values: list[Any] = Field(default_factory=list)
    dependencies: list[dict[str, Any]] = Field(default_factory=list)
    json_patches: list[Any] = Field(default_factory=list, alias="jsonPatches")
    strategic_merge_patches: list[Any] = Field(default_factory=list, alias="strategicMergePatches")
    transformers: list[Any] = Field(default_factory=list)
    force_namespace: str = Field("", alias="forceNamespace")
    force_go_getter: bool = Field(False, alias="forceGoGetter")

    @field_validator("labels", mode="before")
    @classmethod
    def _stringify_labels(cls, v: Any) -> Any:
        # YAML turns `tier: 1` into an int
        if isinstance(v, Mapping):
            return {str(k): str(val).lower() if isinstance(val, bool) else str(val) for k, val in v.items()}
        return v

    @field_validator("version", mode="before")
    @classmethod
    def _stringify_version(cls, v: Any) -> Any:
        return "" if v is None else str(v)


class StateSchema(_Schema):
    repositories: list[RepositorySchema] = Field(default_factory=list)
    helm_defaults: HelmDefaultsSchema = Field(default_factory=HelmDefaultsSchema, alias="helmDefaults")
    common_labels: dict[str, str] = Field(default_factory=dict, alias="commonLabels")
    values: list[Any] = Field(default_factory=list)
    releases: list[ReleaseSchema] = Field(default_factory=list)


# -------------------- Policy checks --------------------

class StateChecker(ABC):
    """One policy rule over a raw YAML document. Raises StateError on violation."""

    @abstractmethod
    def check(self, path: str, raw: Mapping[str, Any]) -> None:
        ...


class EnvironmentsWithReleasesChecker(StateChecker):
    def check(self, path: str, raw: Mapping[str, Any]) -> None:
        if "environments" in raw and "releases" in raw:
            raise StateError(
                "environments and releases cannot be defined within the same YAML part. "
                "Use --- to extract the environments into a dedicated part"
            )


class TopLevelKeyOrderChecker(StateChecker):
    """bases, then environments, then releases."""

    PRIORITY = ("bases", "environments", "releases")
    MESSAGES = {
        "bases": "bases must be defined at the top of the file",
        "environments": "environments must be defined after bases",
        "releases": "releases must be defined after environments",
    }

    def check(self, path: str, raw: Mapping[str, Any]) -> None:
        keys = list(raw.keys())
        for i, key in enumerate(keys):
            if key not in self.PRIORITY:
                continue
            rank = self.PRIORITY.index(key)
            for prev in keys[:i]:
                if prev in self.PRIORITY and self.PRIORITY.index(prev) > rank:
                    raise StateError(self.MESSAGES[key])


DEFAULT_CHECKERS: List[StateChecker] = [
    EnvironmentsWithReleasesChecker(),
    TopLevelKeyOrderChecker(),
]


def run_checkers(path: str, raw: Mapping[str, Any], checkers: Sequence[StateChecker]) -> None:
    # first error wins
    for c in checkers:
        c.check(path, raw)


# -------------------- Templates --------------------

_EXPR_RE = re.compile(r"\{\{-?\s*(.*?)\s*-?\}\}")
_REF_RE = re.compile(r"^\.[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_-]+)*$")


def _lookup(data: Mapping[str, Any], ref: str) -> Any:
    current: Any = data
    for key in ref.lstrip(".").split("."):
        if not isinstance(current, Mapping) or key not in current:
            raise StateError(f"map has no entry for key {ref!r}")
        current = current[key]
    return current


def render_string(s: str, data: Mapping[str, Any]) -> str:
    """
    Substitute `{{ .Path.To.Value }}` references in `s`.

    Only plain field references are understood; pipelines and functions
    are rejected.
    """
    def _sub(m: re.Match) -> str:
        expr = m.group(1)
        if not _REF_RE.match(expr):
            raise StateError(f"unsupported template expression {{{{ {expr} }}}}")
        v = _lookup(data, expr)
        if isinstance(v, bool):
            return str(v).lower()
        return "" if v is None else str(v)

    return _EXPR_RE.sub(_sub, s)


def _template_data(release: Release, values: Mapping[str, Any], overrides: "StateOverrides") -> Dict[str, Any]:
    return {
        "Values": values,
        "StateValues": values,
        "KubeContext": overrides.kube_context,
        "Namespace": overrides.namespace,
        "Release": {
            "Name": release.name,
            "Chart": release.chart,
            "Namespace": release.namespace,
            "KubeContext": release.kube_context,
            "Labels": dict(release.labels),
        },
    }


def _render_release(release: Release, data: Mapping[str, Any]) -> Release:
    r = copy.deepcopy(release)
    for attr in ("name", "chart", "namespace", "kube_context", "version", "condition", "force_namespace"):
        setattr(r, attr, render_string(getattr(r, attr), data))
    r.needs = [render_string(n, data) for n in r.needs]
    r.labels = {k: render_string(v, data) for k, v in r.labels.items()}
    r.values = [render_string(v, data) if isinstance(v, str) else v for v in r.values]
    return r


def execute_templates(
    release: Release,
    values: Mapping[str, Any],
    overrides: "StateOverrides",
    path: str = "",
) -> Release:
    """
    Render the release's fields until they stop changing.

    Fields may reference each other ("{{ .Release.Name }}-db"), so rendering
    repeats against the previous output. Gives up after six rounds.

    Raises:
        StateError: on a bad reference or when references never settle
    """
    prev = release
    for _ in range(MAX_TEMPLATE_ITERATIONS):
        try:
            r = _render_release(prev, _template_data(prev, values, overrides))
        except StateError as e:
            raise StateError(f'failed executing templates in release "{path}"."{release.name}": {e}') from e
        if r == prev:
            return r
        prev = r
    raise StateError(
        f'failed executing templates in release "{path}"."{release.name}": recursive references can\'t be resolved'
    )


def _installed_from_template(s: str, name: str) -> bool:
    v = yaml.safe_load(s)
    if not isinstance(v, bool):
        raise StateError(f'installedTemplate of release "{name}": failed deserialising string {s}')
    return v


# -------------------- Loading --------------------

@dataclass
class StateOverrides:
    kube_context: str = ""
    namespace: str = ""
    chart: str = ""


@dataclass
class ReleaseState:
    base_path: str
    releases: List[Release] = field(default_factory=list)
    repositories: List[Repository] = field(default_factory=list)
    defaults: HelmDefaults = field(default_factory=HelmDefaults)
    common_labels: Dict[str, str] = field(default_factory=dict)
    values: Dict[str, Any] = field(default_factory=dict)
    path: str = ""

    def values_for(self, release: Release) -> Dict[str, Any]:
        """A private copy of the state values; workers never share one map."""
        return copy.deepcopy(self.values)


def deep_merge(dst: Dict[str, Any], src: Mapping[str, Any]) -> Dict[str, Any]:
    for k, v in src.items():
        if isinstance(v, Mapping) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = copy.deepcopy(v)
    return dst


def _load_values(base_path: str, entries: Sequence[Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for entry in entries:
        if isinstance(entry, str):
            p = entry if os.path.isabs(entry) else os.path.join(base_path, entry)
            try:
                with open(p) as f:
                    data = yaml.safe_load(f) or {}
            except OSError as e:
                raise StateError(f"failed to read values file {entry}: {e}") from e
        else:
            data = entry
        if not isinstance(data, Mapping):
            raise StateError(f"values entry {entry!r} must be a mapping")
        deep_merge(merged, data)
    return merged


def normalize_needs(release: Release, all_releases: Sequence[Release], console: Console) -> List[str]:
    """Reformat `needs` to full identities, warning about needs that will not be installed."""
    desired_by_id = {r.id: r.desired() for r in all_releases}
    needs: List[str] = []
    for n in release.needs:
        rid = reformat_need(n, release.namespace, release.kube_context)
        if release.desired() and desired_by_id.get(rid) is False:
            name = rid.split("/")[-1]
            console.print_warning(
                f"release {release.name} needs {name}, but {name} is not installed due to installed: false. "
                f"Either mark {name} as installed or remove {name} from {release.name}'s needs"
            )
        needs.append(rid)
    return needs


def _to_release(s: ReleaseSchema) -> Release:
    return Release(
        name=s.name,
        chart=s.chart or s.directory,
        namespace=s.namespace,
        kube_context=s.kube_context,
        version=s.version,
        needs=list(s.needs),
        labels=dict(s.labels),
        installed=s.installed,
        condition=s.condition,
        devel=s.devel,
        skip_deps=s.skip_deps,
        skip_refresh=s.skip_refresh,
        values=list(s.values),
        dependencies=list(s.dependencies),
        json_patches=list(s.json_patches),
        strategic_merge_patches=list(s.strategic_merge_patches),
        transformers=list(s.transformers),
        force_namespace=s.force_namespace,
        force_go_getter=s.force_go_getter,
    )


def _read_documents(path: str) -> List[Dict[str, Any]]:
    try:
        with open(path) as f:
            docs = [d for d in yaml.safe_load_all(f) if d is not None]
    except OSError as e:
        raise StateError(f"failed to read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise StateError(f"failed to parse {path}: {e}") from e
    for d in docs:
        if not isinstance(d, dict):
            raise StateError(f"failed to parse {path}: top-level value must be a mapping")
    return docs


def load_state(
    path: str,
    console: Console,
    overrides: Optional[StateOverrides] = None,
    checkers: Optional[Sequence[StateChecker]] = None,
) -> ReleaseState:
    """
    Load and validate a state file.

    Documents separated by `---` are checked one by one, then merged:
    releases and repositories accumulate, everything else is overridden by
    later documents.

    Raises:
        StateError: unreadable file, policy violation, or schema error
    """
    overrides = overrides or StateOverrides()
    checkers = DEFAULT_CHECKERS if checkers is None else checkers
    base_path = os.path.dirname(path) or "."

    merged = StateSchema()
    for raw in _read_documents(path):
        run_checkers(path, raw, checkers)
        try:
            part = StateSchema.model_validate(raw)
        except ValidationError as e:
            raise StateError(f"failed to validate {path}: {e}") from e
        merged.repositories += part.repositories
        merged.releases += part.releases
        merged.values += part.values
        if "helmDefaults" in raw:
            merged.helm_defaults = part.helm_defaults
        if "commonLabels" in raw:
            merged.common_labels.update(part.common_labels)

    d = merged.helm_defaults
    defaults = HelmDefaults(
        kube_context=d.kube_context,
        skip_deps=d.skip_deps,
        skip_refresh=d.skip_refresh,
        devel=d.devel,
        args=list(d.args),
    )
    values = _load_values(base_path, merged.values)

    releases: List[Release] = []
    for s in merged.releases:
        r = _to_release(s)
        if not r.kube_context:
            r.kube_context = defaults.kube_context
        for k, v in merged.common_labels.items():
            r.labels.setdefault(k, v)
        r = execute_templates(r, copy.deepcopy(values), overrides, path)
        if s.installed_template is not None:
            rendered = render_string(s.installed_template, _template_data(r, values, overrides))
            r.installed = _installed_from_template(rendered, r.name)
        if overrides.kube_context:
            r.kube_context = overrides.kube_context
        if overrides.namespace:
            r.namespace = overrides.namespace
        releases.append(r)

    for r in releases:
        r.needs = normalize_needs(r, releases, console)

    repositories = [
        Repository(name=x.name, url=x.url, oci=x.oci, username=x.username, password=x.password)
        for x in merged.repositories
    ]

    return ReleaseState(
        base_path=base_path,
        releases=releases,
        repositories=repositories,
        defaults=defaults,
        common_labels=dict(merged.common_labels),
        values=values,
        path=path,
    )

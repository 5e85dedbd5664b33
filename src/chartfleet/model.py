# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Repository:
    """A chart repository the engine knows by alias."""
    name: str
    url: str
    oci: bool = False
    username: str | None = None
    password: str | None = None


@dataclass
class HelmDefaults:
    """Shared defaults applied to every release unless the release overrides them."""
    kube_context: str = ""
    skip_deps: bool = False
    skip_refresh: bool = False
    devel: bool = False
    args: List[str] = field(default_factory=list)


@dataclass
class Release:
    """
    One deployable unit: a named chart installation.

    Tri-state fields (`installed`, `devel`, `skip_deps`, `skip_refresh`) use
    None to mean "not set here, defer to the next level".
    """
    name: str
    chart: str = ""
    namespace: str = ""
    kube_context: str = ""
    version: str = ""
    needs: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    installed: Optional[bool] = None
    condition: str = ""
    devel: Optional[bool] = None
    skip_deps: Optional[bool] = None
    skip_refresh: Optional[bool] = None

    values: List[Any] = field(default_factory=list)

    # chart transformation inputs
    dependencies: List[Dict[str, Any]] = field(default_factory=list)
    json_patches: List[Any] = field(default_factory=list)
    strategic_merge_patches: List[Any] = field(default_factory=list)
    transformers: List[Any] = field(default_factory=list)
    force_namespace: str = ""

    force_go_getter: bool = False

    # set after chart preparation
    chart_path: str = ""

    # ---- alias ----
    @property
    def directory(self) -> str:
        return self.chart

    @directory.setter
    def directory(self, value: str) -> None:
        self.chart = value

    def desired(self) -> bool:
        return self.installed is None or self.installed

    def chart_path_or_name(self) -> str:
        return self.chart_path or self.chart

    @property
    def id(self) -> str:
        return release_to_id(self.kube_context, self.namespace, self.name)


@dataclass(frozen=True)
class PrepareChartKey:
    namespace: str
    name: str
    kube_context: str


@dataclass(frozen=True)
class ChartPrepareResult:
    """What one worker learned about one release's chart."""
    release_name: str
    release_namespace: str = ""
    release_context: str = ""
    chart_name: str = ""
    chart_path: str = ""
    build_deps: bool = False
    skip_refresh: bool = False
    chart_fetched_remotely: bool = False
    error: Optional[BaseException] = None

    @property
    def key(self) -> PrepareChartKey:
        return PrepareChartKey(self.release_namespace, self.release_name, self.release_context)


# ----------------------------------------------------------------------
# Identity
# ----------------------------------------------------------------------

def release_to_id(kube_context: str, namespace: str, name: str) -> str:
    """
    Canonical identity of a release.

    Context and namespace are elided only while empty from the left, so a
    release in context "kc" without a namespace gets "kc//name", which never
    collides with namespace "kc" ("kc/name").
    """
    rid = ""
    if kube_context:
        rid += kube_context + "/"
    if kube_context or namespace:
        rid += namespace + "/"
    rid += name
    return rid


def reformat_need(need: str, namespace: str, kube_context: str) -> str:
    """
    Expand a `needs` entry to a full identity.

    Accepted forms: "name", "ns/name", "ctx/ns/name". Missing components are
    taken from the referencing release.
    """
    parts = need.split("/")
    name = parts[-1]
    if len(parts) >= 2:
        namespace = parts[-2]
    if len(parts) >= 3:
        kube_context = "/".join(parts[:-2])
    return release_to_id(kube_context, namespace, name)

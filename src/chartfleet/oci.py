# oci.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from .model import HelmDefaults, Release, Repository

OCI_PREFIX = "oci://"

LATEST_REJECTED = (
    "the version for OCI charts should be semver compliant, "
    "the latest tag is not supported anymore for helm >= 3.8.0"
)


class OCIVersionError(ValueError):
    pass


# ----------------------------------------------------------------------
# Reference parsing
# ----------------------------------------------------------------------

def parse_version_digest(version: str) -> Tuple[str, str]:
    """Split "1.0@sha256:abc" into ("1.0", "sha256:abc")."""
    ver, sep, digest = version.partition("@")
    return ver, digest if sep else ""


def parse_oci_chart_ref(chart_url: str) -> Tuple[str, str, str]:
    """
    Split an OCI locator into (base, version, digest).

    The tag colon is only looked for in the last path segment, so a
    registry port ("reg:5000") is never mistaken for a version.
    """
    rest, sep, digest = chart_url.partition("@")
    if not sep:
        digest = ""

    head, slash, last = rest.rpartition("/")
    version = ""
    if ":" in last:
        last, _, version = last.partition(":")
    base = f"{head}{slash}{last}"
    return base, version, digest


def repository_and_name_from_chart_name(
    chart_name: str, repositories: Sequence[Repository]
) -> Tuple[Optional[Repository], str]:
    """Look up the repository alias of "repo/chart"; (None, chart_name) when unknown."""
    parts = chart_name.split("/")
    if len(parts) == 1:
        return None, chart_name
    for repo in repositories:
        if repo.name == parts[0]:
            return repo, "/".join(parts[1:])
    return None, chart_name


def is_oci_chart(chart: str, repositories: Sequence[Repository] = ()) -> bool:
    if chart.startswith(OCI_PREFIX):
        return True
    repo, _ = repository_and_name_from_chart_name(chart, repositories)
    return bool(repo and repo.oci)


# ----------------------------------------------------------------------
# Version handling
# ----------------------------------------------------------------------

def is_development(release: Release, defaults: HelmDefaults) -> bool:
    return release.devel if release.devel is not None else defaults.devel


@dataclass(frozen=True)
class OCIChart:
    qualified_name: str  # e.g. "registry.example.com/charts/app:1.2.3"
    chart_name: str
    version: str
    digest: str = ""

    @property
    def pull_ref(self) -> str:
        return f"{self.qualified_name}@{self.digest}" if self.digest else self.qualified_name

    @property
    def path_version(self) -> str:
        return f"{self.version}@{self.digest}" if self.digest else self.version


def oci_qualified_chart_name(
    release: Release,
    repositories: Sequence[Repository],
    defaults: HelmDefaults,
    is_version_at_least: Callable[[str], bool],
) -> Optional[OCIChart]:
    """
    Qualify an OCI release's chart for `helm pull`.

    A tag or digest embedded in an `oci://` locator is used when the
    release sets no version of its own. A digest pins the chart, so no
    tag is needed alongside it.

    Returns None for non-OCI charts.

    Raises:
        OCIVersionError: when the version resolves to the "latest" tag and
        the engine no longer supports it, or "latest" was asked for explicitly
    """
    if not is_oci_chart(release.chart, repositories):
        return None

    wanted, digest = parse_version_digest(release.version)
    if release.chart.startswith(OCI_PREFIX):
        base, ref_version, ref_digest = parse_oci_chart_ref(release.chart)
        wanted = wanted or ref_version
        digest = digest or ref_digest
        chart_name = base.split("/")[-1]
        prefix = base.replace(OCI_PREFIX, "", 1)
    else:
        repo, chart_name = repository_and_name_from_chart_name(release.chart, repositories)
        prefix = f"{repo.url}/{chart_name}"

    if wanted == "latest":
        raise OCIVersionError(LATEST_REJECTED)

    version = "latest"
    if wanted:
        version = wanted
    elif digest or is_development(release, defaults):
        # omit version, otherwise --devel is ignored by the engine
        version = ""

    qualified = f"{prefix}:{version}" if version else prefix

    if version == "latest" and is_version_at_least("3.8.0"):
        raise OCIVersionError(LATEST_REJECTED)

    return OCIChart(qualified_name=qualified, chart_name=chart_name, version=version, digest=digest)


_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._+-]")


def safe_version_path(version: str) -> str:
    """A directory name for a version or range ("^1.0" -> "_1.0"); empty means latest."""
    return _UNSAFE_PATH_CHARS.sub("_", version) if version else "latest"


def oci_chart_path(base_dir: str, release: Release, chart_name: str, version: str) -> str:
    elems = [base_dir]
    if release.namespace:
        elems.append(release.namespace)
    if release.kube_context:
        elems.append(release.kube_context)
    elems += [release.name, chart_name, safe_version_path(version)]
    return os.path.join(*elems)

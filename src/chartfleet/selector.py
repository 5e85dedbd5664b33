# selector.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .model import Release


class SelectorError(Exception):
    pass


# ----------------------------------------------------------------------
# Label filters
# ----------------------------------------------------------------------

@dataclass
class LabelFilter:
    """A parsed `--selector` value such as "tier=frontend,env!=dev"."""
    positive_labels: List[Tuple[str, str]] = field(default_factory=list)
    negative_labels: List[Tuple[str, str]] = field(default_factory=list)

    @classmethod
    def parse(cls, selector: str) -> "LabelFilter":
        lf = cls()
        for label in (s.strip() for s in selector.split(",")):
            if "!=" in label:
                k, _, v = label.partition("!=")
                lf.negative_labels.append((k, v))
            elif "=" in label:
                k, _, v = label.partition("=")
                lf.positive_labels.append((k, v))
            else:
                raise SelectorError(
                    f"malformed label: {label}. Expected label in form k=v or k!=v"
                )
        return lf

    def match(self, release: Release) -> bool:
        labels = release.labels
        for k, v in self.positive_labels:
            if labels.get(k) != v:
                return False
        for k, v in self.negative_labels:
            if labels.get(k) == v:
                return False
        return True


def releases_with_labels(
    releases: Sequence[Release],
    common_labels: Optional[Mapping[str, str]] = None,
) -> List[Release]:
    """
    Copies of `releases` whose labels include the built-in ones.

    name, namespace and chart (last path segment only) can be selected on
    without being declared.
    """
    out: List[Release] = []
    for r in releases:
        labels: Dict[str, str] = dict(common_labels or {})
        labels.update(r.labels)
        labels["name"] = r.name
        labels["namespace"] = r.namespace
        labels["chart"] = r.chart.split("/")[-1]
        out.append(replace(r, labels=labels))
    return out


# ----------------------------------------------------------------------
# Conditions
# ----------------------------------------------------------------------

def condition_enabled(release: Release, values: Mapping[str, Any]) -> bool:
    """
    Evaluate a release `condition` such as "ingress.enabled" against values.

    No condition means enabled. A non-bool or absent `enabled` is False.

    Raises:
        SelectorError: if the condition is not of the form "foo.enabled", or
        an intermediate key is missing or is not a mapping
    """
    if not release.condition:
        return True

    keys = release.condition.split(".")
    if keys[-1] != "enabled":
        raise SelectorError(
            "Condition value must be in the form 'foo.enabled' where 'foo' can be modified as necessary"
        )

    current: Any = values
    current_key = ""
    for key in keys[:-1]:
        current_key = f"{current_key}.{key}"
        if key not in current:
            raise SelectorError(f"values field '{current_key}' not found")
        current = current[key]
        if not isinstance(current, Mapping):
            raise SelectorError(f"values field '{current_key}' is not a map")

    enabled = current.get("enabled")
    return enabled if isinstance(enabled, bool) else False


# ----------------------------------------------------------------------
# Selection
# ----------------------------------------------------------------------

@dataclass
class SelectedRelease:
    release: Release
    filtered: bool


def _collect_needs(release: Release, all_releases: Sequence[Release], acc: Set[str]) -> None:
    for need in release.needs:
        if need in acc:
            continue
        acc.add(need)
        name = need.split("/")[-1]
        for r in all_releases:
            if r.name == name:
                _collect_needs(r, all_releases, acc)


def mark_excluded_releases(
    releases: Sequence[Release],
    selectors: Sequence[str],
    values: Optional[Mapping[str, Any]] = None,
    include_transitive_needs: bool = False,
) -> List[SelectedRelease]:
    """
    Mark every release as kept or filtered out.

    A release is kept when it matches at least one selector (or there are
    none) and its condition holds. With `include_transitive_needs`, every
    release needed (directly or not) by a kept release is kept too.
    """
    filters = [LabelFilter.parse(s) for s in selectors]
    values = values or {}

    marked: List[SelectedRelease] = []
    for r in releases:
        filter_match = any(f.match(r) for f in filters)
        try:
            cond = condition_enabled(r, values)
        except SelectorError as e:
            raise SelectorError(f"failed to parse condition in release {r.name}: {e}") from e
        marked.append(SelectedRelease(r, (bool(filters) and not filter_match) or not cond))

    if include_transitive_needs:
        needed: Set[str] = set()
        for m in marked:
            if not m.filtered:
                _collect_needs(m.release, releases, needed)
        for m in marked:
            if m.release.id in needed:
                m.filtered = False

    return marked


def select_releases(
    releases: Sequence[Release],
    selectors: Sequence[str],
    values: Optional[Mapping[str, Any]] = None,
    common_labels: Optional[Mapping[str, str]] = None,
    include_transitive_needs: bool = False,
) -> List[Release]:
    """
    The releases picked by `selectors`, in declaration order.

    Returned objects are the originals, not the label-augmented copies.
    """
    labeled = releases_with_labels(releases, common_labels)
    marked = mark_excluded_releases(labeled, selectors, values, include_transitive_needs)
    return [orig for orig, m in zip(releases, marked) if not m.filtered]


def check_duplicates(releases: Sequence[Release]) -> None:
    counts: Dict[Tuple[str, str, str], int] = {}
    for r in releases:
        key = (r.namespace, r.name, r.kube_context)
        counts[key] = counts.get(key, 0) + 1

    for (namespace, name, kube_context), c in counts.items():
        if c > 1:
            msg = ""
            if namespace:
                msg += f' in namespace "{namespace}"'
            if kube_context:
                msg += f' in kubecontext "{kube_context}"'
            raise SelectorError(
                f'duplicate release "{name}" found{msg}: there were {c} releases named "{name}" matching specified selector'
            )


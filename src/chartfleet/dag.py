# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .model import Release


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

class PlanError(Exception):
    """Base class for every error the planner raises."""


class UndefinedDependencyError(PlanError):
    def __init__(self, undefined: str, dependents: List[str]):
        self.undefined = undefined
        self.dependents = dependents
        name = undefined.split("/")[-1]
        super().__init__(
            "release(s) {} depend(s) on an undefined release \"{}\". "
            "Perhaps you made a typo in \"needs\" or forgot defining a release "
            "named \"{}\" with appropriate \"namespace\" and \"kubeContext\"?".format(
                ", ".join(f'"{d}"' for d in dependents), undefined, name
            )
        )


class UnhandledDependencyError(PlanError):
    def __init__(self, missing: str, dependents: List[str]):
        self.missing = missing
        self.dependents = dependents

        quoted = [f'"{d}"' for d in dependents]
        if len(quoted) < 3:
            humanized = " and ".join(quoted)
        else:
            humanized = ", ".join(quoted[:-1]) + ", and " + quoted[-1]
        verb = "depends" if len(quoted) == 1 else "depend"
        name = missing.split("/")[-1]

        super().__init__(
            f"release {humanized} {verb} on \"{missing}\" which does not match the selectors. "
            f"Please add a selector like \"--selector name={name}\", or indicate whether to skip "
            f"(--skip-needs) or include (--include-needs) these dependencies"
        )


class CyclicDependencyError(PlanError):
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"dependencies of releases form a cycle: {' -> '.join(cycle)}")


# ----------------------------------------------------------------------
# Graph primitives
# ----------------------------------------------------------------------

def build_dag(needs_by_id: Dict[str, List[str]]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency (dependency -> dependents) and in-degree maps.

    Every id referenced in a needs list must be a key of `needs_by_id`;
    the planner checks that before calling in here.
    """
    adj: Dict[str, Set[str]] = {n: set() for n in needs_by_id}
    indeg: Dict[str, int] = {n: 0 for n in needs_by_id}

    for node, needs in needs_by_id.items():
        for dep in needs:
            # Edge dep -> node (dep must run before node)
            if node not in adj[dep]:
                adj[dep].add(node)
                indeg[node] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    order: Optional[Dict[str, int]] = None,
) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (groups).
    Every member of a level only depends on members of earlier levels.

    Raises CyclicDependencyError when some nodes can never become ready.
    """
    order = order or {}

    def sort_key(n: str):
        return (order.get(n, 0), n)

    indeg = dict(indeg)  # copy (we mutate it)
    current = sorted([n for n, d in indeg.items() if d == 0], key=sort_key)

    levels: List[List[str]] = []
    processed = 0

    while current:
        levels.append(current)
        processed += len(current)

        nxt: List[str] = []
        for node in current:
            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        current = sorted(nxt, key=sort_key)

    if processed != len(indeg):
        stuck = {n for n, d in indeg.items() if d > 0}
        raise CyclicDependencyError(_find_cycle(adj, stuck))

    return levels


def _find_cycle(adj: Dict[str, Set[str]], stuck: Set[str]) -> List[str]:
    # every stuck node sits on or behind a cycle; walk until a node repeats
    reverse: Dict[str, List[str]] = {n: [] for n in stuck}
    for dep, dependents in adj.items():
        for d in dependents:
            if dep in stuck and d in stuck:
                reverse[d].append(dep)

    node = sorted(stuck)[0]
    path: List[str] = []
    seen: Dict[str, int] = {}
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = sorted(reverse[node])[0]
    cycle = path[seen[node]:] + [node]
    # walk went dependent -> dependency; show it in execution order
    cycle.reverse()
    return cycle


# ----------------------------------------------------------------------
# Release planning
# ----------------------------------------------------------------------

def _check_undefined(needs_by_id: Dict[str, List[str]]) -> None:
    undefined: Dict[str, List[str]] = {}
    for node, needs in needs_by_id.items():
        for dep in needs:
            if dep not in needs_by_id:
                undefined.setdefault(dep, []).append(node)
    if undefined:
        first = sorted(undefined)[0]
        raise UndefinedDependencyError(first, sorted(undefined[first]))


def _transitive_closure(needs_by_id: Dict[str, List[str]], roots: Iterable[str]) -> Set[str]:
    seen: Set[str] = set()
    q = deque(roots)
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        q.extend(needs_by_id.get(node, []))
    return seen


def group_releases_by_dependency(
    releases: Sequence[Release],
    selected: Optional[Sequence[Release]] = None,
    include_needs: bool = False,
    skip_needs: bool = False,
) -> List[List[Release]]:
    """
    Group releases into ordered batches.

    Releases sharing an identity stay together on one node. `needs` must
    already be normalized to full identities.

    Args:
        releases: Every declared release, in declaration order
        selected: Subset to plan; None means all of them, empty means none
        include_needs: Pull unselected dependencies in transitively
        skip_needs: Drop edges to unselected dependencies

    Returns:
        A list of groups; each group only depends on earlier groups.

    Raises:
        UndefinedDependencyError, UnhandledDependencyError, CyclicDependencyError
    """
    id_to_releases: Dict[str, List[Release]] = {}
    id_to_index: Dict[str, int] = {}
    needs_by_id: Dict[str, List[str]] = {}

    for i, r in enumerate(releases):
        rid = r.id
        id_to_releases.setdefault(rid, []).append(r)
        id_to_index[rid] = i
        needs_by_id.setdefault(rid, [])
        for n in r.needs:
            if n not in needs_by_id[rid]:
                needs_by_id[rid].append(n)

    _check_undefined(needs_by_id)

    if selected is not None and not selected:
        return []

    only = [r.id for r in (selected or [])]
    if only:
        chosen = set(only)
        if include_needs:
            chosen = _transitive_closure(needs_by_id, only)
        elif not skip_needs:
            unhandled: Dict[str, List[str]] = {}
            for node in sorted(chosen, key=lambda n: id_to_index[n]):
                for dep in needs_by_id[node]:
                    if dep not in chosen:
                        unhandled.setdefault(dep, []).append(node)
            if unhandled:
                first = sorted(unhandled)[0]
                raise UnhandledDependencyError(first, unhandled[first])

        needs_by_id = {
            node: [d for d in needs if d in chosen]
            for node, needs in needs_by_id.items()
            if node in chosen
        }

    adj, indeg = build_dag(needs_by_id)
    levels = topo_levels(adj, indeg, order=id_to_index)

    groups: List[List[Release]] = []
    for level in levels:
        group: List[Release] = []
        for rid in level:
            group.extend(id_to_releases[rid])
        groups.append(group)
    return groups


def plan_releases(
    releases: Sequence[Release],
    selected: Optional[Sequence[Release]] = None,
    include_needs: bool = False,
    skip_needs: bool = False,
    reverse: bool = False,
) -> List[List[Release]]:
    """Plan batches, optionally reversed for teardown. Only whole groups are reversed."""
    groups = group_releases_by_dependency(
        releases,
        selected=selected,
        include_needs=include_needs,
        skip_needs=skip_needs,
    )
    if reverse:
        groups.reverse()
    return groups

"""Tests for the scatter/gather engine and batch helpers."""

from __future__ import annotations

import io
import threading
from typing import Any, Iterator, List

import pytest

from chartfleet.helmexec import HelmError
from chartfleet.model import Release
from chartfleet.runner import (
    ReleaseError,
    ReleaseErrors,
    iterate_on_releases,
    print_batches,
    print_dag,
    scatter_gather,
    with_batches,
)
from chartfleet.ui.console import Console


class TestScatterGather:
    def test_every_item_produces_one_result(self) -> None:
        got: List[int] = []

        def produce(submit) -> None:
            for i in range(10):
                submit(i)

        def consume(worker_id: int, jobs: Iterator[int], emit) -> None:
            for j in jobs:
                emit(j * 2)

        def aggregate(results: Iterator[Any]) -> None:
            got.extend(results)

        scatter_gather(3, 10, produce, consume, aggregate)
        assert sorted(got) == [i * 2 for i in range(10)]

    @pytest.mark.parametrize("concurrency", [0, -1, 50])
    def test_concurrency_is_clamped_to_items(self, concurrency: int) -> None:
        workers = set()
        mu = threading.Lock()

        def produce(submit) -> None:
            for i in range(4):
                submit(i)

        def consume(worker_id: int, jobs: Iterator[int], emit) -> None:
            with mu:
                workers.add(worker_id)
            for j in jobs:
                emit(j)

        scatter_gather(concurrency, 4, produce, consume, lambda results: list(results))
        assert workers <= {0, 1, 2, 3}

    def test_worker_crash_surfaces_instead_of_hanging(self) -> None:
        def produce(submit) -> None:
            submit(1)

        def consume(worker_id: int, jobs: Iterator[int], emit) -> None:
            for _ in jobs:
                raise RuntimeError("worker blew up")

        with pytest.raises(RuntimeError, match="worker blew up"):
            scatter_gather(1, 1, produce, consume, lambda results: list(results))


class TestIterateOnReleases:
    def test_failures_do_not_stop_siblings(self) -> None:
        seen: List[str] = []
        mu = threading.Lock()

        def do(r: Release) -> None:
            with mu:
                seen.append(r.name)
            if r.name in ("b", "d"):
                raise ValueError(f"{r.name} is broken")

        releases = [Release(name=n) for n in "abcd"]
        with pytest.raises(ReleaseErrors) as exc:
            iterate_on_releases(releases, do, concurrency=2)

        assert sorted(seen) == ["a", "b", "c", "d"]
        assert sorted(e.release for e in exc.value.errors) == ["b", "d"]
        assert 'release "b" failed: b is broken' in str(exc.value)

    def test_exit_code_of_first_engine_error(self) -> None:
        errs = ReleaseErrors([
            ReleaseError("a", ValueError("x")),
            ReleaseError("b", HelmError(cmd=["helm"], exit_code=3)),
        ])
        assert errs.exit_code == 3

    def test_empty_input(self) -> None:
        iterate_on_releases([], lambda r: None)


class TestWithBatches:
    def test_failing_group_stops_later_groups(self) -> None:
        ran: List[str] = []
        console = Console(out=io.StringIO(), err=io.StringIO())

        def do(r: Release) -> None:
            ran.append(r.name)
            if r.name == "a":
                raise ValueError("boom")

        groups = [[Release(name="a")], [Release(name="b")]]
        with pytest.raises(ReleaseErrors):
            with_batches(groups, do, console)
        assert ran == ["a"]


class TestPrinting:
    def test_print_batches(self) -> None:
        out = io.StringIO()
        groups = [[Release(name="a")], [Release(name="c"), Release(name="b")]]
        print_batches(groups, Console(out=out))
        lines = out.getvalue().splitlines()
        assert lines[0].split() == ["GROUP", "RELEASES"]
        assert lines[1].split() == ["1", "a"]
        assert lines[2].split() == ["2", "c,", "b"]

    def test_print_dag(self) -> None:
        out = io.StringIO()
        groups = [[Release(name="a")], [Release(name="b", needs=["a"])]]
        print_dag(groups, Console(out=out))
        lines = out.getvalue().splitlines()
        assert lines[0].split() == ["GROUP", "RELEASE", "DEPENDENCIES"]
        assert lines[2].split() == ["2", "b", "a"]

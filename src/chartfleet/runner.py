# runner.py
from __future__ import annotations

import queue
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Sequence

from .model import Release
from .ui.console import Console


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass
class ReleaseError(Exception):
    release: str
    cause: BaseException

    def __str__(self) -> str:
        return f'release "{self.release}" failed: {self.cause}'

    @property
    def exit_code(self) -> Optional[int]:
        return getattr(self.cause, "exit_code", None)


class ReleaseErrors(Exception):
    """Every per-release failure of one batch, in completion order."""

    def __init__(self, errors: List[ReleaseError]):
        self.errors = list(errors)
        super().__init__("\n".join(str(e) for e in self.errors))

    @property
    def exit_code(self) -> Optional[int]:
        # first engine exit code wins, so the CLI can pass it through
        for e in self.errors:
            if e.exit_code is not None:
                return e.exit_code
        return None


# ----------------------------------------------------------------------
# Scatter / gather
# ----------------------------------------------------------------------

_DONE = object()


@dataclass
class _Crash:
    exc: BaseException


def scatter_gather(
    concurrency: int,
    items: int,
    produce: Callable[[Callable[[Any], None]], None],
    consume: Callable[[int, Iterator[Any], Callable[[Any], None]], None],
    aggregate: Callable[[Iterator[Any]], None],
) -> None:
    """
    Fan `items` work items out to a bounded pool of workers and gather results.

    - produce(submit) runs once, in the background, and submits every item.
    - consume(worker_id, jobs, emit) runs once per worker; it iterates `jobs`
      until the producer is done and emits exactly one result per item.
    - aggregate(results) runs on the calling thread while workers are busy;
      `results` yields exactly `items` results.

    Returns only after every worker has exited. A crash inside produce or
    consume is re-raised from the results iterator instead of hanging it.
    """
    if concurrency < 1 or concurrency > items:
        concurrency = items

    jobs: "queue.Queue[Any]" = queue.Queue()
    results: "queue.Queue[Any]" = queue.Queue()

    def _produce() -> None:
        try:
            produce(jobs.put)
        except BaseException as e:
            results.put(_Crash(e))
            raise
        finally:
            for _ in range(concurrency):
                jobs.put(_DONE)

    def _jobs() -> Iterator[Any]:
        while True:
            item = jobs.get()
            if item is _DONE:
                return
            yield item

    def _consume(worker_id: int) -> None:
        try:
            consume(worker_id, _jobs(), results.put)
        except BaseException as e:
            results.put(_Crash(e))
            raise

    def _results() -> Iterator[Any]:
        for _ in range(items):
            r = results.get()
            if isinstance(r, _Crash):
                raise r.exc
            yield r

    with ThreadPoolExecutor(max_workers=concurrency + 1, thread_name_prefix="chartfleet") as pool:
        pool.submit(_produce)
        for w in range(concurrency):
            pool.submit(_consume, w)
        aggregate(_results())


def iterate_on_releases(
    releases: Sequence[Release],
    do: Callable[[Release], None],
    concurrency: int = 0,
) -> None:
    """
    Run `do` for every release with bounded concurrency.

    A failing release never stops its siblings; every failure is collected.

    Raises:
        ReleaseErrors: if at least one release failed
    """
    errors: List[ReleaseError] = []

    def produce(submit: Callable[[Any], None]) -> None:
        for r in releases:
            submit(r)

    def consume(worker_id: int, jobs: Iterator[Release], emit: Callable[[Any], None]) -> None:
        for release in jobs:
            try:
                do(release)
                emit((release, None))
            except Exception as e:
                emit((release, e))

    def aggregate(results: Iterator[Any]) -> None:
        for release, err in results:
            if err is not None:
                errors.append(ReleaseError(release.name, err))

    scatter_gather(concurrency, len(releases), produce, consume, aggregate)

    if errors:
        raise ReleaseErrors(errors)


# ----------------------------------------------------------------------
# Batches
# ----------------------------------------------------------------------

def with_batches(
    groups: List[List[Release]],
    do: Callable[[Release], None],
    console: Console,
    concurrency: int = 0,
    operation: str = "processing",
) -> None:
    """
    Run groups strictly one after another, each group in parallel.

    The first group with a failure stops the run; later groups never start.
    """
    for i, group in enumerate(groups):
        if not group:
            continue
        console.print_debug(
            f"{operation} group {i + 1}/{len(groups)}: {', '.join(r.id for r in group)}"
        )
        iterate_on_releases(group, do, concurrency=concurrency)


def print_batches(groups: List[List[Release]], console: Console) -> None:
    rows = [[str(i + 1), ", ".join(r.id for r in group)] for i, group in enumerate(groups)]
    console.print_table(["GROUP", "RELEASES"], rows)


def print_dag(groups: List[List[Release]], console: Console) -> None:
    rows = []
    for i, group in enumerate(groups):
        for r in group:
            rows.append([str(i + 1), r.id, ", ".join(r.needs)])
    console.print_table(["GROUP", "RELEASE", "DEPENDENCIES"], rows)

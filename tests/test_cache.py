"""Tests for the chart cache and its double-checked pull lock."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest
from filelock import FileLock

from chartfleet.cache import ChartCache, LockTimeoutError, cache_dir, find_chart_directory
from chartfleet.ui.console import Console

from conftest import write_chart


class TestFindChartDirectory:
    def test_shortest_path_wins(self, tmp_path: Path) -> None:
        write_chart(tmp_path / "app")
        write_chart(tmp_path / "app" / "charts" / "sub")
        assert find_chart_directory(str(tmp_path)) == str(tmp_path / "app")

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            find_chart_directory(str(tmp_path))


class TestCacheDir:
    def test_env_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("CHARTFLEET_CACHE_HOME", str(tmp_path))
        assert cache_dir() == str(tmp_path)

    def test_xdg(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("CHARTFLEET_CACHE_HOME", raising=False)
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
        assert cache_dir() == str(tmp_path / "chartfleet")


class TestEnsure:
    def test_present_chart_skips_lock(self, tmp_path: Path, console: Console) -> None:
        dest = tmp_path / "dest"
        write_chart(dest / "app")
        cache = ChartCache(tmp_path, console=console)

        pulled = cache.ensure(str(dest), lambda: pytest.fail("must not pull"))

        assert pulled is False
        assert not (tmp_path / "dest.lock").exists()

    def test_pulls_once_across_threads(self, tmp_path: Path, console: Console) -> None:
        dest = str(tmp_path / "ns" / "app" / "chart" / "1.0.0")
        cache = ChartCache(tmp_path, console=console)
        calls = []
        start = threading.Barrier(4)

        def pull() -> None:
            calls.append(1)
            time.sleep(0.05)
            write_chart(Path(dest) / "chart")

        def worker() -> None:
            start.wait()
            cache.ensure(dest, pull)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert cache.pull_count(dest) == 1
        assert cache.has_chart(dest)

    def test_lock_released_when_pull_fails(self, tmp_path: Path, console: Console) -> None:
        dest = str(tmp_path / "dest")
        cache = ChartCache(tmp_path, console=console)

        def broken() -> None:
            raise RuntimeError("registry unavailable")

        with pytest.raises(RuntimeError, match="registry unavailable"):
            cache.ensure(dest, broken)

        # a second attempt is not blocked by a stale lock
        assert cache.ensure(dest, lambda: write_chart(Path(dest) / "app"), timeout=1) is True

    def test_timeout(self, tmp_path: Path, console: Console) -> None:
        dest = str(tmp_path / "dest")
        cache = ChartCache(tmp_path, console=console)
        holder = FileLock(dest + ".lock")
        ready = threading.Event()
        done = threading.Event()

        def hold() -> None:
            with holder:
                ready.set()
                done.wait(5)

        t = threading.Thread(target=hold)
        t.start()
        try:
            ready.wait(5)
            with pytest.raises(LockTimeoutError) as exc:
                cache.ensure(dest, lambda: pytest.fail("must not pull"), timeout=0.1)
            assert exc.value.lock_path == dest + ".lock"
        finally:
            done.set()
            t.join()


class TestMaintenance:
    def test_info_and_cleanup(self, tmp_path: Path, console: Console) -> None:
        root = tmp_path / "cache"
        write_chart(root / "entry")
        (root / "entry.lock").write_text("")
        cache = ChartCache(root, console=console)

        entries = cache.info()
        assert [e.name for e in entries] == ["entry"]
        assert entries[0].size_bytes > 0

        cache.cleanup()
        assert not root.exists()
        assert cache.info() == []

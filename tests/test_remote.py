"""Tests for remote chart sources."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Tuple

import pytest

from chartfleet.remote import InvalidURLError, Remote, RemoteFetchError, cache_key, is_remote, parse
from chartfleet.ui.console import Console


class TestParse:
    def test_git_getter(self) -> None:
        s = parse("git::https://github.com/org/repo@charts/app?ref=v1.0.0")
        assert s.getter == "git"
        assert s.scheme == "https"
        assert s.host == "github.com"
        assert s.dir == "/org/repo"
        assert s.file == "charts/app"
        assert s.raw_query == "ref=v1.0.0"

    def test_git_getter_with_user(self) -> None:
        s = parse("git::ssh://git@github.com/org/repo@app")
        assert s.user == "git"
        assert s.host == "github.com"

    def test_https_file(self) -> None:
        s = parse("https://charts.example.com/stable/app-1.0.0.tgz")
        assert s.getter == "normal"
        assert s.host == "charts.example.com"
        assert s.dir == "stable"
        assert s.file == "app-1.0.0.tgz"

    @pytest.mark.parametrize("src", ["./charts/app", "stable/nginx", "app", "oci://reg/app"])
    def test_not_remote(self, src: str) -> None:
        with pytest.raises(InvalidURLError):
            parse(src)
        assert not is_remote(src)


class TestCacheKey:
    def test_sanitized(self) -> None:
        assert cache_key("https://github.com/org/repo", {}) == "https_github_com_org_repo"

    def test_query_is_part_of_key(self) -> None:
        assert cache_key("https://h/r", {"ref": ["v1"]}) == "https_h_r.ref=v1"

    def test_sshkey_is_redacted(self) -> None:
        key = cache_key("https://h/r", {"sshkey": ["c2VjcmV0"], "ref": ["main"]})
        assert "c2VjcmV0" not in key
        assert key == "https_h_r.ref=main_sshkey=redacted"


class FakeGetters:
    def __init__(self) -> None:
        self.http_calls: List[Tuple[str, str]] = []
        self.git_calls: List[Tuple[str, str, str]] = []

    def http(self, url: str, dest_file: str) -> None:
        self.http_calls.append((url, dest_file))
        os.makedirs(os.path.dirname(dest_file), exist_ok=True)
        Path(dest_file).write_bytes(b"tgz")

    def git(self, url: str, ref: str, dest_dir: str) -> None:
        self.git_calls.append((url, ref, dest_dir))
        chart = Path(dest_dir) / "charts" / "app"
        chart.mkdir(parents=True)
        (chart / "Chart.yaml").write_text("name: app\nversion: 0.1.0\n")


class TestFetch:
    def remote(self, tmp_path: Path, console: Console, getters: FakeGetters) -> Remote:
        return Remote(console, home=str(tmp_path), http=getters.http, git=getters.git)

    def test_http_download_and_cache(self, tmp_path: Path, console: Console) -> None:
        g = FakeGetters()
        r = self.remote(tmp_path, console, g)

        path = r.fetch("https://charts.example.com/stable/app-1.0.0.tgz")
        again = r.fetch("https://charts.example.com/stable/app-1.0.0.tgz")

        assert path == again
        assert path == os.path.join(str(tmp_path), "https_charts_example_com", "stable", "app-1.0.0.tgz")
        assert len(g.http_calls) == 1

    def test_cache_false_refetches(self, tmp_path: Path, console: Console) -> None:
        g = FakeGetters()
        r = self.remote(tmp_path, console, g)

        r.fetch("https://charts.example.com/stable/app-1.0.0.tgz?cache=false")
        r.fetch("https://charts.example.com/stable/app-1.0.0.tgz?cache=false")

        assert len(g.http_calls) == 2

    def test_git_checkout(self, tmp_path: Path, console: Console) -> None:
        g = FakeGetters()
        r = self.remote(tmp_path, console, g)

        path = r.fetch("git::https://github.com/org/repo@charts/app?ref=v1", "ns/app")

        url, ref, dest = g.git_calls[0]
        assert url == "https://github.com/org/repo"
        assert ref == "v1"
        assert dest == os.path.join(str(tmp_path), "ns/app", "https_github_com_org_repo.ref=v1")
        assert path == os.path.join(dest, "charts/app")
        assert os.path.isfile(os.path.join(path, "Chart.yaml"))

        r.fetch("git::https://github.com/org/repo@charts/app?ref=v1", "ns/app")
        assert len(g.git_calls) == 1

    def test_unsupported_scheme(self, tmp_path: Path, console: Console) -> None:
        r = self.remote(tmp_path, console, FakeGetters())
        with pytest.raises(RemoteFetchError, match="not supported"):
            r.fetch("s3://bucket/charts/app-1.0.0.tgz")

    def test_disabled(self, tmp_path: Path, console: Console, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHARTFLEET_DISABLE_INSECURE_FEATURES", "true")
        r = self.remote(tmp_path, console, FakeGetters())
        with pytest.raises(RemoteFetchError, match="disabled"):
            r.fetch("https://charts.example.com/app-1.0.0.tgz")

    def test_locate_keeps_local_paths(self, tmp_path: Path, console: Console) -> None:
        r = self.remote(tmp_path, console, FakeGetters())
        assert r.locate(str(tmp_path)) == str(tmp_path)
        assert r.locate("stable/nginx") == "stable/nginx"

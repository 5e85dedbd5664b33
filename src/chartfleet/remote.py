# remote.py
from __future__ import annotations

import os
import re
import shutil
import subprocess
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from .cache import cache_dir
from .fs import FileSystem, default_filesystem
from .ui.console import Console

PROTOCOLS = ("s3", "http", "https")
DISABLE_INSECURE_ENV = "CHARTFLEET_DISABLE_INSECURE_FEATURES"


class InvalidURLError(ValueError):
    """The string is not a remote source; callers treat it as a local path or chart name."""


class RemoteFetchError(Exception):
    pass


@dataclass(frozen=True)
class Source:
    getter: str
    scheme: str
    user: str
    host: str
    dir: str
    file: str
    raw_query: str


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def _split_path(path: str) -> List[str]:
    parts = path.split("@")
    if len(parts) == 2:
        return parts
    d = os.path.dirname(path)
    return [d[1:] if d else d, os.path.basename(path)]


def _parse_normal(src: str) -> Source:
    protocol = src.split("://")[0].lower()
    if protocol not in PROTOCOLS:
        raise InvalidURLError(f"failed to parse URL {src}")
    u = urlparse(src)
    d = os.path.dirname(u.path)
    return Source(
        getter="normal",
        scheme=u.scheme,
        user=u.username or "",
        host=u.netloc.rpartition("@")[2],
        dir=d[1:] if d else d,
        file=os.path.basename(u.path),
        raw_query=u.query,
    )


def parse(src: str) -> Source:
    """
    Parse a remote chart spec.

    Accepted forms:
      - http(s)://host/path/chart-1.0.0.tgz and s3://bucket/key
      - <getter>::<scheme>://host/org/repo@path/to/chart?ref=v1

    Raises:
        InvalidURLError: for anything else, e.g. "./chart" or "stable/nginx"
    """
    items = src.split("::")
    getter = ""
    if len(items) == 2:
        getter, src = items
    elif len(src.split("://")) == 2:
        return _parse_normal(src)

    u = urlparse(src)
    if not u.scheme:
        raise InvalidURLError(
            f"parse url: missing scheme - probably this is a local file path? {src}"
        )

    d, f = _split_path(u.path)
    return Source(
        getter=getter,
        scheme=u.scheme,
        user=u.username or "",
        host=u.netloc.rpartition("@")[2],
        dir=d,
        file=f,
        raw_query=u.query,
    )


def is_remote(src: str) -> bool:
    try:
        parse(src)
    except InvalidURLError:
        return False
    return True


_KEY_CHARS = re.compile(r"//|[:/.]")


def _sanitize(s: str) -> str:
    return _KEY_CHARS.sub(lambda m: "" if m.group(0) == ":" else "_", s)


def cache_key(src_dir: str, query: Dict[str, List[str]]) -> str:
    """Stable directory name for a source; query params (minus secrets) are part of it."""
    key = _sanitize(src_dir)
    if query:
        q = dict(query)
        if "sshkey" in q:
            q["sshkey"] = ["redacted"]
        params = urlencode(sorted(q.items()), doseq=True).replace("&", "_")
        key = f"{key}.{params}"
    return key


# ----------------------------------------------------------------------
# Getters
# ----------------------------------------------------------------------

def http_get(url: str, dest_file: str) -> None:
    os.makedirs(os.path.dirname(dest_file), exist_ok=True)
    try:
        with urllib.request.urlopen(url, timeout=60) as resp, open(dest_file, "wb") as out:
            shutil.copyfileobj(resp, out)
    except urllib.error.URLError as e:
        raise RemoteFetchError(f"downloading {url}: {e}") from e


def git_get(url: str, ref: str, dest_dir: str) -> None:
    os.makedirs(os.path.dirname(dest_dir) or ".", exist_ok=True)
    result = subprocess.run(
        ["git", "clone", url, dest_dir],
        check=False,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        raise RemoteFetchError(f"git clone failed: {result.stderr.strip()}")

    if ref:
        result = subprocess.run(
            ["git", "checkout", ref],
            cwd=dest_dir,
            check=False,
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise RemoteFetchError(f"git checkout {ref} failed: {result.stderr.strip()}")


class Remote:
    """Fetches remote chart sources into the chart cache."""

    def __init__(
        self,
        console: Console,
        home: str = "",
        fs: Optional[FileSystem] = None,
        http: Callable[[str, str], None] = http_get,
        git: Callable[[str, str, str], None] = git_get,
    ):
        self.console = console
        self.home = home or cache_dir()
        self.fs = fs or default_filesystem()
        self.http = http
        self.git = git

    def locate(self, url_or_path: str, cache_dir_opt: str = "") -> str:
        """Return local paths unchanged, fetch remote ones."""
        if self.fs.file_exists(url_or_path) or self.fs.directory_exists(url_or_path):
            return url_or_path
        try:
            return self.fetch(url_or_path, cache_dir_opt)
        except InvalidURLError:
            return url_or_path

    def fetch(self, path: str, cache_dir_opt: str = "") -> str:
        """
        Download `path` into the cache and return the local path of its file part.

        Raises:
            InvalidURLError: `path` is not a remote source
            RemoteFetchError: the download failed
        """
        u = parse(path)

        if os.environ.get(DISABLE_INSECURE_ENV, "").lower() in ("1", "true"):
            raise RemoteFetchError(f"remote sources are disabled due to '{DISABLE_INSECURE_ENV}'")

        self.console.print_debug(
            f"remote> getter={u.getter} scheme={u.scheme} host={u.host} dir={u.dir} file={u.file}"
        )

        query = parse_qs(u.raw_query)
        should_cache = query.pop("cache", [""])[0] != "false"

        if u.getter == "normal":
            key = cache_key(f"{u.scheme}://{u.host}", query)
            cache_dir_path = os.path.join(self.home, key, u.dir)
            getter_dst = key
        else:
            key = cache_key(f"{u.scheme}://{u.host}/{u.dir}", query)
            getter_dst = os.path.join(cache_dir_opt, key)
            cache_dir_path = os.path.join(self.home, getter_dst)

        self.console.print_debug(f"remote> cached dir: {cache_dir_path}")

        if self.fs.file_exists(cache_dir_path):
            raise RemoteFetchError(
                f"{getter_dst} is not directory. please remove it so that chartfleet could use it for dependency caching"
            )

        if u.getter == "normal":
            cached = self.fs.file_exists(os.path.join(cache_dir_path, u.file))
        else:
            cached = self.fs.directory_exists(cache_dir_path)

        if not cached or not should_cache:
            self._download(path, u, query, cache_dir_path)

        return os.path.join(cache_dir_path, u.file)

    def _download(self, path: str, u: Source, query: Dict[str, List[str]], dest: str) -> None:
        if u.getter == "normal":
            if u.scheme in ("http", "https"):
                self.http(path, os.path.join(dest, u.file))
                return
            raise RemoteFetchError(f"fetching {path}: {u.scheme} sources are not supported")

        if u.getter != "git":
            raise RemoteFetchError(f"fetching {path}: getter {u.getter!r} is not supported")

        user = f"{u.user}@" if u.user else ""
        src = f"{u.scheme}://{user}{u.host}/{u.dir.lstrip('/')}"
        ref = query.get("ref", [""])[0]
        self.console.print_debug(f"remote> downloading {src} (ref={ref or 'default'}) to {dest}")

        if os.path.isdir(dest):
            shutil.rmtree(dest)
        try:
            self.git(src, ref, dest)
        except Exception:
            shutil.rmtree(dest, ignore_errors=True)
            raise

# values.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import tempfile
import threading
from typing import Any, List, Mapping, Sequence

import yaml

from .fs import FileSystem
from .model import Release
from .ui.console import Console

TEMP_DIR_ENV = "CHARTFLEET_TEMPDIR"


class ValuesError(Exception):
    pass


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def values_file_id(release: Release, data: Any) -> str:
    """"<ns>-<name>-values-<hash>", namespace omitted when empty."""
    parts = [release.namespace] if release.namespace else []
    parts += [release.name, "values"]
    parts.append(_sha256_str(_json_dumps_stable([release.id, data]))[:12])
    return "-".join(parts)


def _temp_dir() -> str:
    work = os.environ.get(TEMP_DIR_ENV)
    if work:
        os.makedirs(work, mode=0o700, exist_ok=True)
        return work
    return tempfile.mkdtemp(prefix="chartfleet")


class Cleanup:
    """
    Deletes the temporary files registered on it, then every parent
    directory left empty, then whole work directories registered with
    `add_tree`. Calling it again is a no-op.
    """

    def __init__(self, fs: FileSystem, console: Console):
        self.fs = fs
        self.console = console
        self.files: List[str] = []
        self.trees: List[str] = []
        self._done = False
        self._mu = threading.Lock()

    def add(self, *paths: str) -> None:
        self.files.extend(paths)

    def add_tree(self, *dirs: str) -> None:
        self.trees.extend(dirs)

    def __call__(self) -> None:
        with self._mu:
            if self._done:
                return
            self._done = True
        remove_files(self.fs, self.console, self.files)
        for d in self.trees:
            try:
                shutil.rmtree(d)
                self.console.print_debug(f"Removed {d}")
            except FileNotFoundError:
                continue
            except OSError as e:
                self.console.print_warning(f"Removing {d}: {e}")


def remove_files(fs: FileSystem, console: Console, files: Sequence[str]) -> None:
    dirs = []
    for f in files:
        d = os.path.dirname(f)
        if d not in dirs:
            dirs.append(d)
        try:
            fs.delete_file(f)
            console.print_debug(f"Removed {f}")
        except OSError as e:
            console.print_warning(f"Removing {f}: {e}")

    # deepest first so nested empty dirs collapse
    for d in sorted(dirs, key=len, reverse=True):
        try:
            if fs.read_dir(d):
                console.print_debug(f"Not removing {d} because it's not empty")
                continue
            fs.delete_file(d)
            console.print_debug(f"Removed {d}")
        except FileNotFoundError:
            continue
        except OSError as e:
            console.print_warning(f"Removing {d}: {e}")


def generate_temp_files(
    release: Release,
    entries: Sequence[Any],
    base_dir: str,
    fs: FileSystem,
    cleanup: Cleanup,
) -> List[str]:
    """
    Materialize values-like entries as temporary YAML files.

    A string entry is a file path relative to `base_dir`; a mapping (or list)
    entry is inline data. Every file written is registered on `cleanup`
    before the next one is attempted, so a midway failure leaves nothing
    untracked.
    """
    generated: List[str] = []
    for entry in entries:
        if isinstance(entry, str):
            path = entry if os.path.isabs(entry) else os.path.join(base_dir, entry)
            if not fs.file_exists(path):
                raise ValuesError(f'file "{entry}" referenced by release "{release.name}" does not exist')
            data = fs.read_file(path)
            key: Any = data.decode("utf-8", errors="replace")
        elif isinstance(entry, (Mapping, list)):
            data = yaml.safe_dump(entry, sort_keys=False).encode("utf-8")
            key = entry
        else:
            raise ValuesError(f"unexpected type of value: value={entry!r}, type={type(entry).__name__}")

        out = os.path.join(_temp_dir(), values_file_id(release, key))
        fs.write_file(out, data)
        cleanup.add(out)
        generated.append(out)
    return generated

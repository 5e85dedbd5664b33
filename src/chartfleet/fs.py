# fs.py
from __future__ import annotations

import glob as _glob
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List


@dataclass
class FileSystem:
    """
    The filesystem operations chart preparation relies on.

    Held as plain callables so tests can swap single operations
    (e.g. make `directory_exists` lie) without touching disk.
    """
    read_file: Callable[[str], bytes]
    write_file: Callable[[str, bytes], None]
    delete_file: Callable[[str], None]
    file_exists: Callable[[str], bool]
    directory_exists: Callable[[str], bool]
    glob: Callable[[str], List[str]]
    read_dir: Callable[[str], List[str]]
    abs: Callable[[str], str]


def _read_file(path: str) -> bytes:
    return Path(path).read_bytes()


def _write_file(path: str, data: bytes) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)


def _delete(path: str) -> None:
    # empty directories are deletable too
    if os.path.isdir(path):
        os.rmdir(path)
    else:
        os.remove(path)


def _read_dir(path: str) -> List[str]:
    return sorted(os.listdir(path))


def default_filesystem() -> FileSystem:
    return FileSystem(
        read_file=_read_file,
        write_file=_write_file,
        delete_file=_delete,
        file_exists=os.path.isfile,
        directory_exists=os.path.isdir,
        glob=lambda pattern: sorted(_glob.glob(pattern)),
        read_dir=_read_dir,
        abs=os.path.abspath,
    )

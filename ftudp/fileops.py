# ftudp/fileops.py
"""
Server-side virtual paths and file I/O helpers.

Virtual paths are what clients see: absolute, ``/`` separated, rooted at the
server root. ``to_real`` maps them onto the filesystem and refuses anything
that resolves outside the root (symlinks included).
"""
import os
import posixpath
from pathlib import Path
from typing import List

from .protocol import IntegrityError, PermissionDeniedError


def virtual_join(current_dir: str, name: str) -> str:
    """Join name onto current_dir; ``..`` never climbs above ``/``."""
    joined = posixpath.normpath(posixpath.join(current_dir or "/", name.replace("\\", "/")))
    if not joined.startswith("/"):
        joined = "/" + joined
    # normpath keeps a leading '//' pair
    return "/" + joined.lstrip("/")


def virtual_parent(current_dir: str) -> str:
    return virtual_join(current_dir, "..")


def to_real(root: Path, vpath: str) -> Path:
    real = (root / vpath.lstrip("/")).resolve()
    if real != root and root not in real.parents:
        raise PermissionDeniedError(f"{vpath} is outside the server root")
    return real


def list_dir(path: Path) -> List[str]:
    """One ``<DIR|FILE> <name> <size>`` line per entry, sorted by name."""
    lines = []
    for entry in sorted(os.scandir(path), key=lambda e: e.name):
        if entry.is_dir():
            lines.append(f"DIR {entry.name} 0")
        else:
            lines.append(f"FILE {entry.name} {entry.stat().st_size}")
    return lines


def read_file(path: Path) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def save_file(path: Path, data: bytes) -> int:
    """Write data, creating parent directories, and return the size on disk."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    size = os.path.getsize(path)
    if size != len(data):
        raise IntegrityError(f"wrote {len(data)} bytes to {path} but found {size}")
    return size


def read_local(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def write_local(path: str, data: bytes) -> int:
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    return len(data)

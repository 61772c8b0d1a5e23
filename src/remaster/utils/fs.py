"""Filesystem helpers for working trees."""

import fnmatch
import hashlib
import os
import shutil
import stat
from pathlib import Path
from typing import Iterator, List, Set, Tuple


GLOB_CHARS = set("*?[")


def make_writable(root: Path) -> int:
    """Grant the owner write permission on every entry below ``root``.

    Symlinks are not followed. Returns the number of entries changed.
    """
    changed = 0
    for dirpath, dirnames, filenames in os.walk(root):
        for name in [dirpath] + [os.path.join(dirpath, n) for n in dirnames + filenames]:
            st = os.lstat(name)
            if stat.S_ISLNK(st.st_mode):
                continue
            if not st.st_mode & stat.S_IWUSR:
                os.chmod(name, stat.S_IMODE(st.st_mode) | stat.S_IWUSR)
                changed += 1
    return changed


def disk_usage(root: Path) -> int:
    """Allocated size of ``root`` in bytes, as ``du -sx --block-size=1`` reports.

    Hard links are counted once and mount points below ``root`` are skipped.
    """
    root_dev = os.lstat(root).st_dev
    seen: Set[Tuple[int, int]] = set()
    total = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [
            d for d in dirnames
            if os.lstat(os.path.join(dirpath, d)).st_dev == root_dev
        ]
        for name in [dirpath] + [os.path.join(dirpath, n) for n in filenames + dirnames]:
            st = os.lstat(name)
            key = (st.st_dev, st.st_ino)
            if key in seen:
                continue
            seen.add(key)
            total += st.st_blocks * 512
    return total


def relpaths(root: Path) -> Iterator[str]:
    """Yield every entry below ``root`` as a POSIX relative path."""
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        for name in sorted(dirnames + filenames):
            rel = name if rel_dir == "." else f"{rel_dir}/{name}"
            yield rel.replace(os.sep, "/")


def regular_files(root: Path) -> List[str]:
    """Sorted relative paths of regular files below ``root``."""
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        for name in filenames:
            full = os.path.join(dirpath, name)
            if stat.S_ISREG(os.lstat(full).st_mode):
                files.append(os.path.relpath(full, root).replace(os.sep, "/"))
    return sorted(files)


def matches_pattern(relpath: str, pattern: str) -> bool:
    """Best-effort match of a removal pattern against a relative path.

    Glob patterns match the whole path or the file name. Plain patterns
    match as a path prefix (a directory and everything below it) or as a
    substring of the file name.
    """
    relpath = relpath.strip("/")
    pattern = pattern.strip("/")
    if not pattern:
        return False
    name = relpath.rsplit("/", 1)[-1]
    if GLOB_CHARS & set(pattern):
        return fnmatch.fnmatchcase(relpath, pattern) or fnmatch.fnmatchcase(name, pattern)
    if relpath == pattern or relpath.startswith(pattern + "/"):
        return True
    return "/" not in pattern and pattern in name


def md5_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree."""
    if path.is_symlink() or not path.is_dir():
        path.unlink()
    else:
        shutil.rmtree(path)


def resolve_in_tree(root: Path, relpath: str, max_links: int = 40) -> Path:
    """Locate ``relpath`` inside ``root`` as if ``root`` were ``/``.

    Symlinks in the parent directories are followed relative to ``root``, so
    an absolute link target never points at the host. The final component is
    not followed.
    """
    parts = [p for p in relpath.split("/") if p and p != "."]
    if not parts:
        raise ValueError(f"empty path: {relpath!r}")
    pending = parts[:-1]
    current = root
    links = 0
    while pending:
        part = pending.pop(0)
        if part == "..":
            if current != root:
                current = current.parent
            continue
        candidate = current / part
        if candidate.is_symlink():
            links += 1
            if links > max_links:
                raise OSError(f"too many levels of symbolic links resolving {relpath}")
            target = os.readlink(candidate)
            if target.startswith("/"):
                current = root
            pending = [p for p in target.split("/") if p and p != "."] + pending
            continue
        current = candidate
    return current / parts[-1]

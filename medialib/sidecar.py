from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional

from .config import LibraryConfig

try:
    import fcntl as _fcntl  # type: ignore
except Exception:
    _fcntl = None  # type: ignore

SIDECAR_DIRNAME = ".medialib"
INCOMPLETE_PREFIX = ".incomplete_"
LOCKS_DIRNAME = ".locks"

PROBE_FILE = "probe.json"
THUMBNAIL_FILE = "thumbnail.jpg"
PREVIEW_FILE = "preview.mp4"
MONTAGE_PREFIX = "montageshot"
CAPTURE_PREFIX = "capture."
CONVERTED_PREFIX = "converted."

_SAFE_CHARS = re.compile(r"[A-Za-z0-9._-]")


def escape_name(name: str) -> str:
    """
    Reversible escape of a file name for use as a directory name: safe characters
    pass through, everything else (including '%') becomes %XX of its UTF-8 bytes.
    """
    out: list[str] = []
    for ch in name:
        if ch != "%" and _SAFE_CHARS.fullmatch(ch):
            out.append(ch)
        else:
            out.extend(f"%{b:02X}" for b in ch.encode("utf-8"))
    return "".join(out)


def sidecar_name(name: str) -> str:
    # Hash of the exact name keeps "A.mp4" and "a.mp4" apart on case-folding filesystems.
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:10]
    return f"{escape_name(name)}.{digest}"


def incomplete_path(final: Path) -> Path:
    return final.with_name(INCOMPLETE_PREFIX + final.name)


def complete_size(path: Path) -> Optional[int]:
    """Size of a finished artifact, or None if it does not exist (or is empty)."""
    try:
        st = path.stat()
    except OSError:
        return None
    if not path.is_file() or st.st_size <= 0:
        return None
    return int(st.st_size)


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON atomically to avoid partial files. The temporary name is unique,
    so concurrent writers of the same file never share one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f"{INCOMPLETE_PREFIX}{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class Sidecars:
    """Locates the private per-file directory that holds derived assets."""

    def __init__(self, config: LibraryConfig):
        self.root = Path(config.root)
        self.previews_dir = Path(config.previews_dir) if config.previews_dir else None

    def dir_for(self, source: Path) -> Path:
        source = Path(source)
        parent = source.parent
        if self.previews_dir is not None:
            try:
                rel_parent = parent.relative_to(self.root)
            except ValueError:
                rel_parent = Path(*parent.parts[1:])
            parent = self.previews_dir / rel_parent
        return parent / SIDECAR_DIRNAME / sidecar_name(source.name)


# -----------------------------
# Per-artifact locks (in-proc + cross-proc)
# -----------------------------
class _LockEntry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


# An entry lives only while some thread holds or waits for it.
_ARTIFACT_LOCKS: dict[str, _LockEntry] = {}
_ARTIFACT_LOCKS_MTX = threading.Lock()


class ArtifactLock:
    """
    Exclusive lock on one artifact name inside a sidecar directory. Threads in
    this process serialize on a shared Lock; other processes on an advisory
    flock of `<sidecar>/.locks/<name>.lock` where fcntl is available.
    """

    def __init__(self, sidecar: Path, name: str):
        self.sidecar = Path(sidecar)
        self.name = name
        self._key = str(self.sidecar / self.name)
        self._entry: Optional[_LockEntry] = None
        self._fd: Optional[int] = None

    def __enter__(self) -> "ArtifactLock":
        with _ARTIFACT_LOCKS_MTX:
            entry = _ARTIFACT_LOCKS.get(self._key)
            if entry is None:
                entry = _LockEntry()
                _ARTIFACT_LOCKS[self._key] = entry
            entry.refs += 1
        entry.lock.acquire()
        self._entry = entry
        try:
            d = self.sidecar / LOCKS_DIRNAME
            d.mkdir(parents=True, exist_ok=True)
            fd = os.open(d / f"{self.name}.lock", os.O_CREAT | os.O_RDWR, 0o644)
            self._fd = fd
            if _fcntl is not None:
                _fcntl.flock(fd, _fcntl.LOCK_EX)
        except BaseException:
            self._release()
            raise
        return self

    def _release(self) -> None:
        try:
            if self._fd is not None:
                if _fcntl is not None:
                    _fcntl.flock(self._fd, _fcntl.LOCK_UN)
                os.close(self._fd)
        finally:
            self._fd = None
            entry, self._entry = self._entry, None
            if entry is not None:
                entry.lock.release()
                with _ARTIFACT_LOCKS_MTX:
                    entry.refs -= 1
                    if entry.refs == 0:
                        _ARTIFACT_LOCKS.pop(self._key, None)

    def __exit__(self, exc_type, exc, tb) -> None:
        self._release()

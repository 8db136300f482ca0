from __future__ import annotations

import logging
import os
import stat as stat_mod
import time
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union

from PIL import Image, UnidentifiedImageError

from .config import LibraryConfig
from .errors import FatalIndexingError, ProbeError, SoftIndexingError
from .log import log
from .model import Audio, DirEntry, Directory, EntryType, File, Photo, Video
from .probe import Prober, guess_mime, sniff_mime
from .sidecar import PROBE_FILE, SIDECAR_DIRNAME, Sidecars
from .store import DerivedAssetStore
from .workqueue import WorkQueue


def split_path(path: Union[str, Sequence[str]]) -> list[str]:
    """
    Path components with empty and '.' parts dropped, so leading, trailing and
    repeated separators are all harmless. Accepts "a/b" or ["a", "b"].
    """
    if isinstance(path, str):
        parts = path.replace("\\", "/").split("/")
    else:
        parts = [p for c in path for p in str(c).replace("\\", "/").split("/")]
    return [p for p in parts if p and p != "."]


def is_hidden(entry: os.DirEntry) -> bool:
    if os.name == "nt":
        attrs = getattr(entry.stat(follow_symlinks=False), "st_file_attributes", 0)
        return bool(attrs & getattr(stat_mod, "FILE_ATTRIBUTE_HIDDEN", 2))
    return entry.name.startswith(".")


class LibraryIndex:
    """
    Lazily materialized tree of the library. A directory is read the first
    time its entries are needed and cached until invalidated; `build` forces
    the whole tree.
    """

    def __init__(
        self,
        config: LibraryConfig,
        *,
        prober: Prober,
        store: DerivedAssetStore,
        queue: WorkQueue,
        sidecars: Sidecars,
    ):
        self.config = config
        self.prober = prober
        self.store = store
        self.queue = queue
        self.sidecars = sidecars
        self.root = Directory(name="", rel_path="", abs_path=Path(config.root), loader=self._load)

    # -----------------------------
    # Classification
    # -----------------------------
    def classify(self, name: str) -> Optional[EntryType]:
        ext = Path(name).suffix.lower().lstrip(".")
        if not ext:
            return None
        if ext in self.config.video_extensions:
            return EntryType.VIDEO
        if ext in self.config.audio_extensions:
            return EntryType.AUDIO
        if ext in self.config.photo_extensions:
            return EntryType.PHOTO
        return None

    def _rel(self, parent: Directory, name: str) -> str:
        return f"{parent.rel_path}/{name}" if parent.rel_path else name

    # -----------------------------
    # Directory loading
    # -----------------------------
    def _load(self, directory: Directory) -> dict[str, DirEntry]:
        t0 = time.time()
        try:
            with os.scandir(directory.abs_path) as it:
                items = list(it)
        except OSError as e:
            raise FatalIndexingError(f"cannot read directory {directory.abs_path}: {e}") from e

        entries: dict[str, DirEntry] = {}
        pending: list[tuple[os.DirEntry, EntryType]] = []
        for de in items:
            if de.name == SIDECAR_DIRNAME:
                continue
            try:
                if not self.config.include_hidden and is_hidden(de):
                    continue
                if de.is_dir():
                    entries[de.name] = Directory(
                        name=de.name,
                        rel_path=self._rel(directory, de.name),
                        abs_path=Path(de.path),
                        loader=self._load,
                    )
                    continue
                if not de.is_file():
                    continue
            except OSError as e:
                log("index", f"skip unreadable entry {de.path}: {e}", level=logging.WARNING)
                continue
            kind = self.classify(de.name)
            if kind is not None:
                pending.append((de, kind))

        built = self.queue.map(lambda item: self._build_safe(directory, *item), pending)
        for f in built:
            if f is not None:
                entries[f.name] = f
        log("index", f"loaded dir={directory.rel_path or '/'} entries={len(entries)} elapsed={time.time() - t0:.3f}s")
        return entries

    def _build_safe(self, parent: Directory, de: os.DirEntry, kind: EntryType) -> Optional[File]:
        try:
            return self._build_file(parent, de, kind)
        except SoftIndexingError as e:
            log("index", f"excluded {de.path}: {e}", level=logging.WARNING)
            return None

    def _build_file(self, parent: Directory, de: os.DirEntry, kind: EntryType) -> File:
        path = Path(de.path)
        rel = self._rel(parent, de.name)
        try:
            st = de.stat()
            size = int(st.st_size)
            modified_ms = st.st_mtime_ns // 1_000_000
        except OSError as e:
            raise SoftIndexingError(f"cannot stat: {e}") from e

        if kind is EntryType.PHOTO:
            try:
                with Image.open(path) as im:
                    width, height = im.size
                    mime = Image.MIME.get(im.format or "") or guess_mime(path)
            except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
                raise SoftIndexingError(f"cannot read image: {e}") from e
            if width <= 0 or height <= 0:
                raise SoftIndexingError(f"invalid dimensions {width}x{height}")
            photo = Photo(
                name=de.name,
                rel_path=rel,
                abs_path=path,
                size=size,
                modified_ms=modified_ms,
                mime=mime,
                width=width,
                height=height,
            )
            photo.converted = self.store.converted_formats(photo)
            return photo

        try:
            probe = self.prober.probe_cached(path, self.sidecars.dir_for(path) / PROBE_FILE)
        except OSError as e:
            raise SoftIndexingError(f"cannot probe: {e}") from e

        if kind is EntryType.AUDIO:
            if probe.audio is None:
                raise ProbeError(f"{de.name}: no audio stream")
            audio = Audio(
                name=de.name,
                rel_path=rel,
                abs_path=path,
                size=size,
                modified_ms=modified_ms,
                mime=sniff_mime(path, probe.format_name, is_video=False),
                duration=probe.duration,
                codec=probe.audio.codec,
                tags=probe.tags,
            )
            audio.converted = self.store.converted_formats(audio)
            return audio

        if probe.video is None:
            raise ProbeError(f"{de.name}: no video stream")
        video = Video(
            name=de.name,
            rel_path=rel,
            abs_path=path,
            size=size,
            modified_ms=modified_ms,
            mime=sniff_mime(path, probe.format_name, is_video=True),
            duration=probe.duration,
            width=probe.video.width,
            height=probe.video.height,
            fps=probe.video.fps,
            video_codec=probe.video.codec,
            audio_codec=probe.audio.codec if probe.audio else None,
            tags=probe.tags,
        )
        video.converted = self.store.converted_formats(video)
        video.preview = self.store.preview_bundle(video)
        return video

    # -----------------------------
    # Queries
    # -----------------------------
    def resolve_directory(self, path: Union[str, Sequence[str]]) -> Optional[Directory]:
        cur = self.root
        for component in split_path(path):
            entry = cur.entries().get(component)
            if not isinstance(entry, Directory):
                return None
            cur = entry
        return cur

    def resolve_file(self, path: Union[str, Sequence[str]]) -> Optional[File]:
        parts = split_path(path)
        if not parts:
            return None
        parent = self.resolve_directory(parts[:-1])
        if parent is None:
            return None
        entry = parent.entries().get(parts[-1])
        if entry is None or isinstance(entry, Directory):
            return None
        return entry

    def walk(self, directory: Optional[Directory] = None) -> Iterator[DirEntry]:
        """Every entry below `directory` (default: root), depth first."""
        stack = [directory or self.root]
        while stack:
            d = stack.pop()
            for entry in d.entries().values():
                yield entry
                if isinstance(entry, Directory):
                    stack.append(entry)

    def invalidate(self, path: Union[str, Sequence[str]] = ()) -> bool:
        d = self.resolve_directory(path)
        if d is None:
            return False
        d.invalidate()
        log("index", f"invalidated dir={d.rel_path or '/'}")
        return True

    def build(self) -> dict:
        """Read the whole tree. FatalIndexingError from any directory aborts the build."""
        t0 = time.time()
        dirs = 1
        counts = {t.value: 0 for t in EntryType if t is not EntryType.DIRECTORY}
        for entry in self.walk():
            if isinstance(entry, Directory):
                dirs += 1
            else:
                counts[entry.type.value] += 1
        stats = {"directories": dirs, **counts, "elapsed": round(time.time() - t0, 3)}
        log("index", f"build done root={self.root.abs_path} {stats}")
        return stats

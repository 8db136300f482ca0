from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

from .probe import MediaTags


class EntryType(str, enum.Enum):
    DIRECTORY = "dir"
    PHOTO = "photo"
    AUDIO = "audio"
    VIDEO = "video"


@dataclass(frozen=True)
class ConvertedFormat:
    """A browser-compatible transcode of a file, found in its sidecar."""
    format: str
    mime: str
    path: Path
    size: int


@dataclass
class Snippet:
    path: Path
    size: int


@dataclass
class PreviewBundle:
    thumbnail: Optional[Path] = None
    snippet: Optional[Snippet] = None
    montage_frames: dict[int, Path] = field(default_factory=dict)


@dataclass(kw_only=True)
class Directory:
    name: str
    rel_path: str
    abs_path: Path
    loader: Optional[Callable[["Directory"], dict[str, "DirEntry"]]] = field(default=None, repr=False)
    _entries: Optional[dict[str, "DirEntry"]] = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    type = EntryType.DIRECTORY

    def entries(self) -> dict[str, "DirEntry"]:
        """Children by name. Read from disk on first access, then cached."""
        with self._lock:
            if self._entries is None:
                self._entries = self.loader(self) if self.loader is not None else {}
            return self._entries

    def invalidate(self) -> None:
        with self._lock:
            self._entries = None


@dataclass(kw_only=True)
class _FileBase:
    name: str
    rel_path: str
    abs_path: Path
    size: int
    mime: str
    # last modification time in epoch milliseconds, as stat()ed when indexed
    modified_ms: int = 0
    converted: list[ConvertedFormat] = field(default_factory=list)

    def converted_format(self, fmt: str) -> Optional[ConvertedFormat]:
        for c in self.converted:
            if c.format == fmt:
                return c
        return None

    def add_converted(self, conv: ConvertedFormat) -> None:
        # one entry per MIME type
        self.converted = [c for c in self.converted if c.mime != conv.mime] + [conv]


@dataclass(kw_only=True)
class Photo(_FileBase):
    width: int
    height: int

    type = EntryType.PHOTO


@dataclass(kw_only=True)
class Audio(_FileBase):
    duration: float
    codec: Optional[str] = None
    tags: MediaTags = field(default_factory=MediaTags)

    type = EntryType.AUDIO


@dataclass(kw_only=True)
class Video(_FileBase):
    duration: float
    width: int
    height: int
    fps: float
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    tags: MediaTags = field(default_factory=MediaTags)
    preview: PreviewBundle = field(default_factory=PreviewBundle)

    type = EntryType.VIDEO


File = Union[Photo, Audio, Video]
DirEntry = Union[Directory, Photo, Audio, Video]

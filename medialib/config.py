from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_AUDIO_EXTENSIONS = frozenset({"mp3", "ogg", "wav"})
DEFAULT_VIDEO_EXTENSIONS = frozenset({
    "3gp", "avi", "flv", "m4v", "mkv", "mov", "mp4", "rm", "rmvb", "webm", "wmv",
})
DEFAULT_PHOTO_EXTENSIONS = frozenset({
    "bmp", "gif", "jpeg", "jpg", "png", "tif", "tiff", "webp",
})


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    try:
        v = environ.get(name)
        return int(v) if v is not None and str(v).strip() != "" else int(default)
    except Exception:
        return int(default)


def _env_on(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    v = environ.get(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _env_path(environ: Mapping[str, str], name: str) -> Optional[Path]:
    v = environ.get(name)
    if not v or not str(v).strip():
        return None
    return Path(v).expanduser().resolve()


def parse_extensions(raw: Optional[str], default: frozenset[str]) -> frozenset[str]:
    """
    Parse a comma-separated extension list ("mp4,.MKV, webm") into a lowercased set
    without leading dots. Empty or missing input yields the default set.
    """
    if not raw:
        return default
    out: set[str] = set()
    for part in raw.split(","):
        s = part.strip().lower().lstrip(".")
        if s:
            out.add(s)
    return frozenset(out) if out else default


def default_concurrency() -> int:
    return max(1, os.cpu_count() or 1)


@dataclass(frozen=True)
class LibraryConfig:
    """
    Settings consumed by the core. The CLI/server layer builds this once;
    nothing in the core reads the environment directly.
    """
    root: Path
    audio_extensions: frozenset[str] = DEFAULT_AUDIO_EXTENSIONS
    photo_extensions: frozenset[str] = DEFAULT_PHOTO_EXTENSIONS
    video_extensions: frozenset[str] = DEFAULT_VIDEO_EXTENSIONS
    include_hidden: bool = False
    previews_dir: Optional[Path] = None
    scratch_dir: Optional[Path] = None
    concurrency: int = field(default_factory=default_concurrency)
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    eager_index: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LibraryConfig":
        env = os.environ if environ is None else environ
        root = Path(env.get("MEDIA_ROOT") or ".").expanduser().resolve()
        return cls(
            root=root,
            audio_extensions=parse_extensions(env.get("AUDIO_EXTS"), DEFAULT_AUDIO_EXTENSIONS),
            photo_extensions=parse_extensions(env.get("PHOTO_EXTS"), DEFAULT_PHOTO_EXTENSIONS),
            video_extensions=parse_extensions(env.get("VIDEO_EXTS"), DEFAULT_VIDEO_EXTENSIONS),
            include_hidden=_env_on(env, "INCLUDE_HIDDEN", False),
            previews_dir=_env_path(env, "PREVIEWS_DIR"),
            scratch_dir=_env_path(env, "SCRATCH_DIR"),
            concurrency=max(1, _env_int(env, "WORK_CONCURRENCY", default_concurrency())),
            ffmpeg=env.get("FFMPEG") or "ffmpeg",
            ffprobe=env.get("FFPROBE") or "ffprobe",
            eager_index=_env_on(env, "INDEX_EAGER", True),
        )

    def describe(self) -> dict:
        return {
            "root": str(self.root),
            "audio_extensions": sorted(self.audio_extensions),
            "photo_extensions": sorted(self.photo_extensions),
            "video_extensions": sorted(self.video_extensions),
            "include_hidden": self.include_hidden,
            "previews_dir": str(self.previews_dir) if self.previews_dir else None,
            "scratch_dir": str(self.scratch_dir) if self.scratch_dir else None,
            "concurrency": self.concurrency,
        }

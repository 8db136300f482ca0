from __future__ import annotations

import json
import logging
import math
import mimetypes
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from .errors import ProbeError
from .ff import ToolRunner
from .log import log, trim
from .sidecar import write_json_atomic

# ffprobe demuxer name (first of the comma list) -> MIME type
_FORMAT_MIME: dict[str, str] = {
    "mov": "video/mp4",
    "mp4": "video/mp4",
    "m4a": "audio/mp4",
    "matroska": "video/x-matroska",
    "webm": "video/webm",
    "avi": "video/x-msvideo",
    "flv": "video/x-flv",
    "asf": "video/x-ms-wmv",
    "rm": "application/vnd.rn-realmedia",
    "3gp": "video/3gpp",
    "mpegts": "video/mp2t",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "aac": "audio/aac",
}

_TAG_KEYS = ("artist", "album", "genre", "title", "track")


@dataclass(frozen=True)
class MediaTags:
    artist: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None
    title: Optional[str] = None
    track: Optional[int] = None

    def to_json(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class VideoStream:
    codec: str
    width: int
    height: int
    fps: float


@dataclass(frozen=True)
class AudioStream:
    codec: str


@dataclass(frozen=True)
class ProbeResult:
    duration: float
    format_name: str = ""
    video: Optional[VideoStream] = None
    audio: Optional[AudioStream] = None
    tags: MediaTags = field(default_factory=MediaTags)

    def to_json(self) -> dict[str, Any]:
        return {
            "duration": self.duration,
            "format_name": self.format_name,
            "video": asdict(self.video) if self.video else None,
            "audio": asdict(self.audio) if self.audio else None,
            "tags": self.tags.to_json(),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ProbeResult":
        v = data.get("video")
        a = data.get("audio")
        return cls(
            duration=float(data["duration"]),
            format_name=str(data.get("format_name") or ""),
            video=VideoStream(**v) if v else None,
            audio=AudioStream(**a) if a else None,
            tags=MediaTags(**(data.get("tags") or {})),
        )


def parse_frame_rate(raw: Any) -> Optional[float]:
    """
    Parse an ffprobe rate such as "30000/1001" or "25" into a float.
    Returns None for unknown rates ("0/0") or garbage.
    """
    if raw is None:
        return None
    s = str(raw).strip()
    try:
        if "/" in s:
            num_s, den_s = s.split("/", 1)
            num, den = float(num_s), float(den_s)
            if den == 0:
                return None
            val = num / den
        else:
            val = float(s)
    except ValueError:
        return None
    if not math.isfinite(val) or val <= 0:
        return None
    return val


def parse_track(raw: Any) -> Optional[int]:
    """Track tags come as "3" or "3/12"."""
    if raw is None:
        return None
    head = str(raw).strip().split("/", 1)[0].strip()
    try:
        return int(head)
    except ValueError:
        return None


def _finite(name: str, value: Any, what: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ProbeError(f"{name}: missing or invalid {what} ({value!r})")
    if not math.isfinite(v) or v < 0:
        raise ProbeError(f"{name}: invalid {what} ({value!r})")
    return v


def _tags(payload: dict[str, Any]) -> MediaTags:
    merged: dict[str, str] = {}
    sources = [payload.get("format") or {}] + list(payload.get("streams") or [])
    # Container tags win over stream tags.
    for src in reversed(sources):
        for k, v in (src.get("tags") or {}).items():
            lk = str(k).lower()
            if lk in _TAG_KEYS and v not in (None, ""):
                merged[lk] = str(v).strip()
    return MediaTags(
        artist=merged.get("artist"),
        album=merged.get("album"),
        genre=merged.get("genre"),
        title=merged.get("title"),
        track=parse_track(merged.get("track")),
    )


def parse_probe_output(payload: dict[str, Any], name: str) -> ProbeResult:
    """
    Turn `ffprobe -show_format -show_streams` JSON into a ProbeResult.

    Every numeric field must be present, finite and non-negative; otherwise
    ProbeError is raised and the file is left out of the library.
    """
    if not isinstance(payload, dict):
        raise ProbeError(f"{name}: unexpected probe output")
    fmt = payload.get("format") or {}
    duration = _finite(name, fmt.get("duration"), "duration")

    video: Optional[VideoStream] = None
    audio: Optional[AudioStream] = None
    for st in payload.get("streams") or []:
        ctype = st.get("codec_type")
        if ctype == "video" and video is None:
            # cover art embedded in audio files shows up as a one-frame video stream
            if (st.get("disposition") or {}).get("attached_pic"):
                continue
            fps = parse_frame_rate(st.get("r_frame_rate")) or parse_frame_rate(st.get("avg_frame_rate"))
            if fps is None:
                raise ProbeError(f"{name}: invalid frame rate ({st.get('r_frame_rate')!r})")
            video = VideoStream(
                codec=str(st.get("codec_name") or ""),
                width=int(_finite(name, st.get("width"), "width")),
                height=int(_finite(name, st.get("height"), "height")),
                fps=fps,
            )
        elif ctype == "audio" and audio is None:
            audio = AudioStream(codec=str(st.get("codec_name") or ""))

    return ProbeResult(
        duration=duration,
        format_name=str(fmt.get("format_name") or ""),
        video=video,
        audio=audio,
        tags=_tags(payload),
    )


def guess_mime(path: Path) -> str:
    return mimetypes.guess_type(path.name)[0] or "application/octet-stream"


def sniff_mime(path: Path, format_name: str, *, is_video: bool) -> str:
    """
    MIME from the detected container; the extension is only used when the
    container is unknown. ffprobe reports "mov,mp4,m4a,3gp,3g2,mj2" for the
    whole ISO family, so the extension breaks that tie.
    """
    names = [n.strip() for n in (format_name or "").split(",") if n.strip()]
    if "mp4" in names or "mov" in names:
        ext = path.suffix.lower().lstrip(".")
        if ext in ("3gp", "3g2"):
            return "video/3gpp"
        if not is_video:
            return "audio/mp4"
        return "video/quicktime" if ext == "mov" else "video/mp4"
    if names:
        mime = _FORMAT_MIME.get(names[0])
        if mime:
            if mime.startswith("video/") and not is_video and names[0] in ("webm", "matroska", "ogg"):
                mime = "audio/" + mime.split("/", 1)[1]
            return mime
    return guess_mime(path)


class Prober:
    """Probe Adapter over ffprobe."""

    def __init__(self, runner: ToolRunner):
        self.runner = runner

    def probe(self, path: Path) -> ProbeResult:
        proc = self.runner.ffprobe([
            "-print_format", "json",
            "-show_format", "-show_streams",
            "-ignore_chapters", "1",
            str(path),
        ])
        if proc.returncode != 0:
            raise ProbeError(f"{path.name}: probe failed ({trim(proc.stderr, 300)})")
        try:
            payload = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ProbeError(f"{path.name}: invalid probe json ({e})") from e
        return parse_probe_output(payload, path.name)

    def probe_cached(self, path: Path, cache_file: Path) -> ProbeResult:
        """
        Return the cached probe result for `path`, re-probing when the cache is
        missing, unreadable or was written for a different size/mtime.
        """
        st = path.stat()
        stamp = {"size": int(st.st_size), "mtime_ns": int(st.st_mtime_ns)}
        try:
            cached = json.loads(cache_file.read_text())
            if cached.get("source") == stamp:
                return ProbeResult.from_json(cached["result"])
            log("probe", f"stale cache path={path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            log("probe", f"cannot read cache {cache_file}: {e}", level=logging.WARNING)
        except (ValueError, KeyError, TypeError) as e:
            log("probe", f"discarding unreadable cache {cache_file}: {e}")

        result = self.probe(path)
        try:
            write_json_atomic(cache_file, {"source": stamp, "result": result.to_json()})
        except OSError as e:
            # the probe itself succeeded; only the cache is lost
            log("probe", f"cannot write cache {cache_file}: {e}", level=logging.WARNING)
        log("probe", f"probed path={path} duration={result.duration:.3f}")
        return result

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

# Consider HiDPI tiles: logical 250px is physical 500px.
PREVIEW_SCALED_WIDTH = 500

THUMBNAIL_POSITION = 0.5

PREVIEW_PARTS = 8
PREVIEW_PART_SECONDS = 3.0

MONTAGE_INTERVAL_SECONDS = 2.0
MONTAGE_MAX_FRAMES = 200

CAPTURE_MAX_SECONDS = 60.0


@dataclass(frozen=True)
class CaptureTier:
    name: str
    mime: str
    fps_cap: Optional[float]
    width_cap: Optional[int]
    codec: str
    container: str


CAPTURE_TIERS: dict[str, CaptureTier] = {
    "gif": CaptureTier("gif", "image/gif", 10, 800, "gif", "gif"),
    "low": CaptureTier("low", "video/mp4", 10, 800, "libx264", "mp4"),
    "medium": CaptureTier("medium", "video/mp4", 30, 1280, "libx264", "mp4"),
    "high": CaptureTier("high", "video/mp4", 60, 1920, "libx264", "mp4"),
    "original": CaptureTier("original", "video/mp4", None, None, "libx264", "mp4"),
}

CAPTURE_PRESET = "veryfast"
CAPTURE_CRF = 18
PREVIEW_PRESET = "veryfast"
PREVIEW_CRF = 23
CONVERT_PRESET = "veryfast"
CONVERT_CRF = 17


def ceiling(native, cap):
    """The source's own value, lowered to `cap` when one applies. Never upscales."""
    if cap is None:
        return native
    if native is None:
        return cap
    return min(native, cap)


def preview_segments(duration: float) -> list[tuple[float, float]]:
    """
    (start, length) of each preview part: PREVIEW_PARTS slices of
    PREVIEW_PART_SECONDS centred in equal chapters of the video. Short videos
    that cannot hold all parts are taken whole as a single segment.
    """
    duration = float(duration)
    if duration <= PREVIEW_PARTS * PREVIEW_PART_SECONDS:
        return [(0.0, duration)]
    chapter = duration / PREVIEW_PARTS
    out: list[tuple[float, float]] = []
    for i in range(PREVIEW_PARTS):
        start = chapter * i + chapter / 2 - PREVIEW_PART_SECONDS / 2
        out.append((max(0.0, start), PREVIEW_PART_SECONDS))
    return out


def montage_times(duration: float) -> list[int]:
    """Whole-second timestamps, one per ~2s of video, at most 200."""
    duration = float(duration)
    count = int(math.floor(min(MONTAGE_MAX_FRAMES, duration / MONTAGE_INTERVAL_SECONDS)))
    if count <= 0:
        return []
    seen: set[int] = set()
    out: list[int] = []
    for i in range(count):
        t = int(round(duration * i / count))
        if t not in seen:
            seen.add(t)
            out.append(t)
    return out


# ------------------------------------------------------------
# Browser-compatible containers
# ------------------------------------------------------------
PCM_CODECS = frozenset(
    f"pcm_{kind}{bits}{endian}"
    for kind in ("s", "u")
    for bits in ("16", "24", "32", "64")
    for endian in ("be", "le")
) | {"pcm_s8", "pcm_u8"}


@dataclass(frozen=True)
class BrowserContainer:
    format: str
    audio_codecs: frozenset[str]
    video_codecs: frozenset[str]


BROWSER_CONTAINERS: tuple[BrowserContainer, ...] = (
    BrowserContainer("mp4", frozenset({"aac", "alac", "mp3"}), frozenset({"av1", "h264", "vp9"})),
    BrowserContainer("mp3", frozenset({"mp3"}), frozenset()),
    BrowserContainer("flac", frozenset({"flac"}), frozenset()),
    BrowserContainer("wav", PCM_CODECS, frozenset()),
    BrowserContainer("aac", frozenset({"aac"}), frozenset()),
)


def find_suitable_container(video_codec: Optional[str], audio_codec: Optional[str]) -> Optional[str]:
    """First browser container that can carry both streams as-is, if any."""
    for c in BROWSER_CONTAINERS:
        if (audio_codec is None or audio_codec in c.audio_codecs) and (
            video_codec is None or video_codec in c.video_codecs
        ):
            return c.format
    return None


# Conversions the store can produce, by sidecar suffix.
CONVERSION_FORMATS: dict[str, str] = {
    "mp4": "video/mp4",
    "mp3": "audio/mpeg",
}

CONVERTED_MIME: dict[str, str] = {
    **CONVERSION_FORMATS,
    "webm": "video/webm",
    "m4a": "audio/mp4",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
}

MP4_VIDEO_CODECS = frozenset({"h264"})
MP4_AUDIO_CODECS = frozenset({"aac"})
MP3_AUDIO_CODECS = frozenset({"mp3"})


@dataclass(frozen=True)
class ConversionPlan:
    format: str
    copy_video: bool
    copy_audio: bool
    has_video: bool
    has_audio: bool


def conversion_plan(fmt: str, *, video_codec: Optional[str], audio_codec: Optional[str]) -> ConversionPlan:
    """
    Streams already in a codec the target container plays everywhere are copied;
    the rest are re-encoded. Raises ValueError for formats the store cannot make.
    """
    if fmt == "mp4":
        if video_codec is None:
            raise ValueError("mp4 conversion needs a video stream")
        return ConversionPlan(
            format="mp4",
            copy_video=video_codec in MP4_VIDEO_CODECS,
            copy_audio=audio_codec in MP4_AUDIO_CODECS,
            has_video=True,
            has_audio=audio_codec is not None,
        )
    if fmt == "mp3":
        if audio_codec is None:
            raise ValueError("mp3 conversion needs an audio stream")
        return ConversionPlan(
            format="mp3",
            copy_video=False,
            copy_audio=audio_codec in MP3_AUDIO_CODECS,
            has_video=False,
            has_audio=True,
        )
    raise ValueError(f"unsupported conversion format: {fmt}")

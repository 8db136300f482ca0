from __future__ import annotations

import concurrent.futures
import enum
import logging
import math
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Hashable, Optional, Union

from PIL import Image

from .config import LibraryConfig
from .errors import ClientError, NotFound, TranscodeError
from .log import log
from .model import Audio, ConvertedFormat, File, Photo, PreviewBundle, Snippet, Video
from .policy import (
    CAPTURE_CRF,
    CAPTURE_MAX_SECONDS,
    CAPTURE_PRESET,
    CAPTURE_TIERS,
    CONVERSION_FORMATS,
    CONVERT_CRF,
    CONVERT_PRESET,
    CONVERTED_MIME,
    PREVIEW_CRF,
    PREVIEW_PRESET,
    PREVIEW_SCALED_WIDTH,
    THUMBNAIL_POSITION,
    ceiling,
    conversion_plan,
    montage_times,
    preview_segments,
)
from .sidecar import (
    CAPTURE_PREFIX,
    CONVERTED_PREFIX,
    INCOMPLETE_PREFIX,
    MONTAGE_PREFIX,
    PREVIEW_FILE,
    THUMBNAIL_FILE,
    ArtifactLock,
    Sidecars,
    complete_size,
    incomplete_path,
)
from .transcode import AudioSpec, InputSpec, OutputSpec, Stream, Transcoder, VideoSpec
from .workqueue import WorkQueue


class AssetKind(str, enum.Enum):
    THUMBNAIL = "thumbnail"
    PREVIEW = "preview"
    MONTAGE_FRAME = "montageFrame"
    CAPTURE = "capture"
    CONVERSION = "conversion"


def _mark(v: float) -> str:
    """Exact text of a time mark: "12" for whole seconds, shortest round-trip repr otherwise."""
    f = float(v)
    return str(int(f)) if f.is_integer() else repr(f)


@dataclass(frozen=True)
class CaptureParams:
    start: float
    end: float
    type: str
    silent: bool = False

    @property
    def duration(self) -> float:
        # both ends are inclusive whole-second marks
        return self.end - self.start + 1

    @property
    def audio(self) -> bool:
        return self.type != "gif" and not self.silent

    def validate(self, media_duration: float) -> None:
        """Reject out-of-range or overlong requests with a 400."""
        for v in (self.start, self.end):
            if v is None or not math.isfinite(v) or v < 0 or v > media_duration:
                raise ClientError(400, "Bad range")
        if self.end < self.start:
            raise ClientError(400, "Bad range")
        if self.duration >= CAPTURE_MAX_SECONDS:
            raise ClientError(400, "Too long")
        if self.type not in CAPTURE_TIERS:
            raise ClientError(400, "Invalid type")

    def file_name(self) -> str:
        name = f"{CAPTURE_PREFIX}{_mark(self.start)}-{_mark(self.end)}.{self.type}"
        return name if self.audio else name + ".silent"


Params = Union[None, int, str, CaptureParams]


@dataclass(frozen=True)
class DerivedFile:
    path: Path
    size: int
    mime: str
    name: Optional[str] = None


class SingleFlight:
    """
    At most one running computation per key. Callers arriving while one runs
    wait on the same future. The key is dropped as soon as the computation
    finishes, so failures are never remembered; completed results live on disk.

    Computations run on `executor`, not on the caller's thread, so a caller
    that goes away does not cancel work other callers are waiting for.
    """

    def __init__(self, executor: concurrent.futures.Executor):
        self._executor = executor
        self._mtx = threading.Lock()
        self._inflight: dict[Hashable, concurrent.futures.Future] = {}

    def _run(self, key: Hashable, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        finally:
            with self._mtx:
                self._inflight.pop(key, None)

    def future(self, key: Hashable, fn: Callable[[], Any]) -> concurrent.futures.Future:
        with self._mtx:
            fut = self._inflight.get(key)
            if fut is None:
                fut = self._executor.submit(self._run, key, fn)
                self._inflight[key] = fut
            return fut

    def do(self, key: Hashable, fn: Callable[[], Any]) -> Any:
        return self.future(key, fn).result()

    def pending(self) -> int:
        with self._mtx:
            return len(self._inflight)


def _concat_line(path: Path) -> str:
    quoted = str(path).replace("'", "'\\''")
    return f"file '{quoted}'\n"


class DerivedAssetStore:
    """
    Maps (file, kind, params) to a durable artifact in the file's sidecar and
    generates it on first request.

    Disk is the source of truth: a finished artifact exists at its final path,
    anything being written lives under an `.incomplete_` name beside it.
    """

    def __init__(
        self,
        config: LibraryConfig,
        *,
        sidecars: Sidecars,
        transcoder: Transcoder,
        queue: WorkQueue,
    ):
        self.config = config
        self.sidecars = sidecars
        self.transcoder = transcoder
        self.queue = queue
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(4, queue.concurrency * 2),
            thread_name_prefix="media-derive",
        )
        self._flights = SingleFlight(self._executor)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # -----------------------------
    # Naming and validation
    # -----------------------------
    def _check(self, file: File, kind: AssetKind, params: Params) -> None:
        if kind is AssetKind.THUMBNAIL:
            if not isinstance(file, (Photo, Video)):
                raise ClientError(400, "Thumbnails are only available for photos and videos")
        elif kind is AssetKind.PREVIEW:
            if not isinstance(file, Video):
                raise ClientError(400, "Previews only available for videos")
        elif kind is AssetKind.MONTAGE_FRAME:
            if not isinstance(file, Video):
                raise ClientError(400, "Montage frames are only available for videos")
            if not isinstance(params, int) or params not in montage_times(file.duration):
                raise NotFound("Frame not found")
        elif kind is AssetKind.CAPTURE:
            if not isinstance(file, Video):
                raise ClientError(400, "Capturing is only supported on videos")
            if not isinstance(params, CaptureParams):
                raise ClientError(400, "Bad range")
            params.validate(file.duration)
        elif kind is AssetKind.CONVERSION:
            if isinstance(file, Photo):
                raise ClientError(400, "Conversions are only available for audio and video")
            fmt = str(params or "")
            if fmt not in CONVERSION_FORMATS:
                raise ClientError(400, f"Unsupported format: {fmt or '(none)'}")
            if fmt == "mp4" and not isinstance(file, Video):
                raise ClientError(400, "mp4 conversion is only available for videos")
            if fmt == "mp3" and isinstance(file, Video) and file.audio_codec is None:
                raise ClientError(400, "mp3 conversion needs an audio stream")
        else:
            raise ValueError(f"unknown asset kind: {kind!r}")

    def path_for(self, file: File, kind: AssetKind, params: Params = None) -> Path:
        d = self.sidecars.dir_for(file.abs_path)
        if kind is AssetKind.THUMBNAIL:
            return d / THUMBNAIL_FILE
        if kind is AssetKind.PREVIEW:
            return d / PREVIEW_FILE
        if kind is AssetKind.MONTAGE_FRAME:
            return d / f"{MONTAGE_PREFIX}{int(params)}.jpg"
        if kind is AssetKind.CAPTURE:
            return d / params.file_name()
        if kind is AssetKind.CONVERSION:
            return d / f"{CONVERTED_PREFIX}{params}"
        raise ValueError(f"unknown asset kind: {kind!r}")

    def _describe(self, file: File, kind: AssetKind, params: Params) -> tuple[str, Optional[str]]:
        """(mime, display name) of an artifact."""
        if kind is AssetKind.THUMBNAIL:
            return "image/jpeg", f"{file.name} (thumbnail)"
        if kind is AssetKind.PREVIEW:
            return "video/mp4", f"{file.name} (preview)"
        if kind is AssetKind.MONTAGE_FRAME:
            return "image/jpeg", f"{file.name} (frame {params}s)"
        if kind is AssetKind.CAPTURE:
            tier = CAPTURE_TIERS[params.type]
            silent = "" if params.audio else ", silent"
            return tier.mime, f"{file.name} (capture {params.duration:g}s, {params.type}{silent})"
        return CONVERSION_FORMATS[str(params)], f"{Path(file.name).stem}.{params}"

    # -----------------------------
    # Lookup / generation
    # -----------------------------
    def lookup(self, file: File, kind: AssetKind, params: Params = None) -> Optional[DerivedFile]:
        """The finished artifact if it is already on disk. Never generates."""
        self._check(file, kind, params)
        path = self.path_for(file, kind, params)
        size = complete_size(path)
        if size is None:
            return None
        mime, name = self._describe(file, kind, params)
        return DerivedFile(path=path, size=size, mime=mime, name=name)

    def get_or_create(self, file: File, kind: AssetKind, params: Params = None) -> DerivedFile:
        """
        Return the artifact, generating it first if needed. Concurrent callers for
        the same key share one generation.
        """
        found = self.lookup(file, kind, params)
        if found is not None:
            return found
        path = self.path_for(file, kind, params)
        if self.queue.in_slot():
            # already holding a work slot: generating inline avoids waiting on a slot we hold
            self._generate(file, kind, params, path)
        else:
            key = (str(file.abs_path), kind.value, params)
            self._flights.do(key, lambda: self._generate(file, kind, params, path))
        size = complete_size(path)
        if size is None:
            raise TranscodeError(f"{kind.value} for {file.rel_path} missing after generation")
        self._record(file, kind, params, path)
        mime, name = self._describe(file, kind, params)
        return DerivedFile(path=path, size=size, mime=mime, name=name)

    def _generate(self, file: File, kind: AssetKind, params: Params, final: Path) -> None:
        final.parent.mkdir(parents=True, exist_ok=True)
        with ArtifactLock(final.parent, final.name):
            if complete_size(final) is not None:
                return
            tmp = incomplete_path(final)
            tmp.unlink(missing_ok=True)
            t0 = time.time()
            log("derive", f"start kind={kind.value} params={params} path={file.rel_path}")
            try:
                self._produce(file, kind, params, tmp)
                if complete_size(tmp) is None:
                    raise TranscodeError(f"{kind.value} for {file.rel_path} produced no output")
                os.replace(tmp, final)
            except BaseException as e:
                tmp.unlink(missing_ok=True)
                log("derive", f"failed kind={kind.value} path={file.rel_path} err={e}", level=logging.ERROR)
                raise
            log("derive", f"done kind={kind.value} path={file.rel_path} elapsed={time.time() - t0:.2f}s")

    def _record(self, file: File, kind: AssetKind, params: Params, final: Path) -> None:
        if kind is AssetKind.CONVERSION:
            size = complete_size(final)
            if size is not None:
                file.add_converted(ConvertedFormat(
                    format=str(params), mime=CONVERSION_FORMATS[str(params)], path=final, size=size,
                ))
            return
        if not isinstance(file, Video):
            return
        if kind is AssetKind.THUMBNAIL:
            file.preview.thumbnail = final
        elif kind is AssetKind.PREVIEW:
            size = complete_size(final)
            if size is not None:
                file.preview.snippet = Snippet(path=final, size=size)
        elif kind is AssetKind.MONTAGE_FRAME:
            file.preview.montage_frames[int(params)] = final

    # -----------------------------
    # Producers: each writes exactly `out`
    # -----------------------------
    def _produce(self, file: File, kind: AssetKind, params: Params, out: Path) -> None:
        if kind is AssetKind.THUMBNAIL:
            if isinstance(file, Photo):
                self.queue.call(_resize_photo, file.abs_path, out, PREVIEW_SCALED_WIDTH)
            else:
                self.transcoder.extract_frame(
                    file.abs_path,
                    at=file.duration * THUMBNAIL_POSITION,
                    width=ceiling(file.width, PREVIEW_SCALED_WIDTH),
                    output=out,
                )
        elif kind is AssetKind.MONTAGE_FRAME:
            self.transcoder.extract_frame(
                file.abs_path,
                at=float(params),
                width=ceiling(file.width, PREVIEW_SCALED_WIDTH),
                output=out,
            )
        elif kind is AssetKind.PREVIEW:
            self._produce_preview(file, out)
        elif kind is AssetKind.CAPTURE:
            self._produce_capture(file, params, out)
        elif kind is AssetKind.CONVERSION:
            self._produce_conversion(file, str(params), out)
        else:
            raise ValueError(f"unknown asset kind: {kind!r}")

    def _preview_video(self, video: Video) -> VideoSpec:
        return VideoSpec(
            codec="libx264",
            preset=PREVIEW_PRESET,
            crf=PREVIEW_CRF,
            width=ceiling(video.width, PREVIEW_SCALED_WIDTH),
            pixel_format="yuv420p",
        )

    def _produce_preview(self, video: Video, out: Path) -> None:
        segments = preview_segments(video.duration)
        if len(segments) == 1:
            start, length = segments[0]
            self.transcoder.convert(
                InputSpec(file=video.abs_path, start=start or None, duration=length),
                self._preview_video(video),
                Stream.DISABLED,
                OutputSpec(file=out, format="mp4", faststart=True),
            )
            return

        scratch = self.config.scratch_dir or out.parent
        scratch.mkdir(parents=True, exist_ok=True)
        work = Path(tempfile.mkdtemp(prefix=f"{INCOMPLETE_PREFIX}preview-", dir=scratch))
        try:
            def encode(item: tuple[int, tuple[float, float]]) -> Path:
                i, (start, length) = item
                part = work / f"part{i}.mp4"
                self.transcoder.convert(
                    InputSpec(file=video.abs_path, start=start, duration=length),
                    self._preview_video(video),
                    Stream.DISABLED,
                    OutputSpec(file=part, format="mp4"),
                )
                return part

            parts = self.queue.map(encode, list(enumerate(segments)))
            listing = work / "parts.txt"
            listing.write_text("".join(_concat_line(p) for p in parts))
            self.transcoder.convert(
                InputSpec(file=listing, format="concat"),
                Stream.COPY,
                Stream.DISABLED,
                OutputSpec(file=out, format="mp4", faststart=True),
            )
        finally:
            shutil.rmtree(work, ignore_errors=True)

    def _produce_capture(self, video: Video, params: CaptureParams, out: Path) -> None:
        tier = CAPTURE_TIERS[params.type]
        if tier.codec == "gif":
            vspec = VideoSpec(
                codec="gif",
                loop=True,
                fps=ceiling(video.fps, tier.fps_cap),
                width=ceiling(video.width, tier.width_cap),
            )
        else:
            vspec = VideoSpec(
                codec="libx264",
                preset=CAPTURE_PRESET,
                crf=CAPTURE_CRF,
                fps=ceiling(video.fps, tier.fps_cap) if tier.fps_cap else None,
                width=ceiling(video.width, tier.width_cap) if tier.width_cap else None,
                pixel_format="yuv420p",
            )
        audio: Union[AudioSpec, Stream] = AudioSpec(codec="aac") if params.audio and video.audio_codec else Stream.DISABLED
        self.transcoder.convert(
            InputSpec(file=video.abs_path, start=params.start, duration=params.duration),
            vspec,
            audio,
            OutputSpec(file=out, format=tier.container, faststart=tier.container == "mp4"),
        )

    def _produce_conversion(self, file: Union[Audio, Video], fmt: str, out: Path) -> None:
        try:
            if isinstance(file, Video):
                plan = conversion_plan(fmt, video_codec=file.video_codec or "", audio_codec=file.audio_codec)
            else:
                plan = conversion_plan(fmt, video_codec=None, audio_codec=file.codec or "")
        except ValueError as e:
            raise ClientError(400, str(e)) from e

        if not plan.has_video:
            vspec: Union[VideoSpec, Stream] = Stream.DISABLED
        elif plan.copy_video:
            vspec = Stream.COPY
        else:
            vspec = VideoSpec(codec="libx264", preset=CONVERT_PRESET, crf=CONVERT_CRF, pixel_format="yuv420p")

        if not plan.has_audio:
            aspec: Union[AudioSpec, Stream] = Stream.DISABLED
        elif plan.copy_audio:
            aspec = Stream.COPY
        elif fmt == "mp3":
            aspec = AudioSpec(codec="libmp3lame", bitrate="192k")
        else:
            aspec = AudioSpec(codec="aac")

        self.transcoder.convert(
            InputSpec(file=file.abs_path),
            vspec,
            aspec,
            OutputSpec(file=out, format=fmt, faststart=fmt == "mp4"),
            metadata=True,
        )

    # -----------------------------
    # State found on disk
    # -----------------------------
    def preview_bundle(self, video: Video) -> PreviewBundle:
        d = self.sidecars.dir_for(video.abs_path)
        bundle = PreviewBundle()
        if complete_size(d / THUMBNAIL_FILE) is not None:
            bundle.thumbnail = d / THUMBNAIL_FILE
        size = complete_size(d / PREVIEW_FILE)
        if size is not None:
            bundle.snippet = Snippet(path=d / PREVIEW_FILE, size=size)
        for t in montage_times(video.duration):
            p = d / f"{MONTAGE_PREFIX}{t}.jpg"
            if complete_size(p) is not None:
                bundle.montage_frames[t] = p
        return bundle

    def converted_formats(self, file: File) -> list[ConvertedFormat]:
        d = self.sidecars.dir_for(file.abs_path)
        out: dict[str, ConvertedFormat] = {}
        try:
            names = sorted(os.listdir(d))
        except OSError:
            return []
        for name in names:
            if not name.startswith(CONVERTED_PREFIX):
                continue
            fmt = name[len(CONVERTED_PREFIX):].lower()
            mime = CONVERTED_MIME.get(fmt)
            if not mime or mime in out:
                continue
            size = complete_size(d / name)
            if size is not None:
                out[mime] = ConvertedFormat(format=fmt, mime=mime, path=d / name, size=size)
        return list(out.values())

    def stats(self) -> dict:
        return {"generating": self._flights.pending()}


def _resize_photo(src: Path, out: Path, width: int) -> None:
    try:
        with Image.open(src) as im:
            im.load()
            if im.width > width:
                height = max(1, round(im.height * width / im.width))
                im = im.resize((width, height), Image.Resampling.LANCZOS)
            if im.mode != "RGB":
                im = im.convert("RGB")
            im.save(out, format="JPEG", quality=85)
    except OSError as e:
        raise TranscodeError(f"thumbnail of {src.name} failed: {e}") from e

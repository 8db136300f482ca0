from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import TranscodeError
from .ff import ToolRunner
from .log import log, trim


class Stream(enum.Enum):
    """Non-encoding treatment of a stream: pass it through, or drop it."""
    COPY = "copy"
    DISABLED = "disabled"


@dataclass(frozen=True)
class InputSpec:
    file: Path
    start: Optional[float] = None
    # Input-side trim; seeking happens before decoding so far seeks stay fast.
    duration: Optional[float] = None
    # Demuxer override, e.g. "concat" for a segment list file.
    format: Optional[str] = None


@dataclass(frozen=True)
class VideoSpec:
    codec: str
    preset: Optional[str] = None
    crf: Optional[int] = None
    # JPEG-style scale for still-frame encoders: 2 (best) .. 31 (worst)
    quality: Optional[int] = None
    fps: Optional[float] = None
    width: Optional[int] = None
    frames: Optional[int] = None
    loop: Optional[bool] = None
    pixel_format: Optional[str] = None


@dataclass(frozen=True)
class AudioSpec:
    codec: str
    bitrate: Optional[str] = None


@dataclass(frozen=True)
class OutputSpec:
    file: Path
    format: Optional[str] = None
    faststart: bool = False


VideoArg = Union[VideoSpec, Stream]
AudioArg = Union[AudioSpec, Stream]


def _num(v: float) -> str:
    return f"{float(v):.3f}"


class Transcoder:
    """
    Runs declarative conversions through the external conversion tool.

    All knowledge of the tool's command-line dialect is kept in `arguments`;
    callers only describe input, streams and output.
    """

    def __init__(self, runner: ToolRunner):
        self.runner = runner

    def arguments(
        self,
        input: InputSpec,
        video: VideoArg,
        audio: AudioArg,
        output: OutputSpec,
        *,
        metadata: bool = False,
    ) -> list[str]:
        args: list[str] = []

        # Input
        if input.format:
            args += ["-f", input.format]
            if input.format == "concat":
                args += ["-safe", "0"]
        if input.start is not None:
            args += ["-ss", _num(input.start)]
        if input.duration is not None:
            args += ["-t", _num(input.duration)]
        args += ["-i", str(input.file)]

        if not metadata:
            args += ["-map_metadata", "-1"]

        # Video
        if video is Stream.COPY:
            args += ["-c:v", "copy"]
        elif video is Stream.DISABLED:
            args += ["-vn"]
        else:
            filters: list[str] = []
            if video.fps is not None:
                filters.append(f"fps={video.fps:g}")
            if video.width is not None:
                filters.append(f"scale={int(video.width)}:-2")
            if filters:
                args += ["-filter:v", ",".join(filters)]
            args += ["-c:v", video.codec]
            if video.preset:
                args += ["-preset", video.preset]
            if video.crf is not None:
                args += ["-crf", str(int(video.crf))]
            if video.quality is not None:
                args += ["-q:v", str(max(2, min(31, int(video.quality))))]
            if video.pixel_format:
                args += ["-pix_fmt", video.pixel_format]
            if video.frames is not None:
                args += ["-frames:v", str(int(video.frames))]
            if video.loop is not None:
                args += ["-loop", "0" if video.loop else "-1"]
            if video.codec == "libx264":
                args += ["-max_muxing_queue_size", "1048576"]

        # Audio
        if audio is Stream.COPY:
            args += ["-c:a", "copy"]
        elif audio is Stream.DISABLED:
            args += ["-an"]
        else:
            args += ["-c:a", audio.codec]
            if audio.bitrate:
                args += ["-b:a", audio.bitrate]

        # Output
        if output.faststart:
            args += ["-movflags", "+faststart"]
        if output.format:
            args += ["-f", output.format]
        args.append(str(output.file))
        return args

    def convert(
        self,
        input: InputSpec,
        video: VideoArg,
        audio: AudioArg,
        output: OutputSpec,
        *,
        metadata: bool = False,
    ) -> None:
        """
        Run one conversion to completion. Raises TranscodeError on a non-zero exit
        or any fatal message on stderr; the caller owns cleanup of `output.file`.
        """
        args = self.arguments(input, video, audio, output, metadata=metadata)
        proc = self.runner.ffmpeg(args)
        err = (proc.stderr or "").strip()
        if proc.returncode != 0 or err:
            log("ffmpeg", f"convert failed input={input.file} out={output.file} code={proc.returncode} stderr={trim(err)!r}")
            raise TranscodeError(
                f"conversion of {Path(input.file).name} failed",
                stderr=err,
                returncode=proc.returncode,
            )

    def extract_frame(self, source: Path, *, at: float, width: Optional[int], output: Path) -> None:
        self.convert(
            InputSpec(file=source, start=max(0.0, float(at))),
            VideoSpec(codec="mjpeg", quality=2, width=width, frames=1),
            Stream.DISABLED,
            OutputSpec(file=output, format="image2"),
        )

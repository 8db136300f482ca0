import json
import subprocess
import threading
from pathlib import Path
from typing import Optional

from PIL import Image

from medialib.errors import ProbeError, TranscodeError
from medialib.probe import AudioStream, MediaTags, ProbeResult, Prober, VideoStream
from medialib.transcode import Transcoder


def write_photo(path: Path, size=(800, 600), fmt: str = "JPEG") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color=(40, 90, 160)).save(path, format=fmt)
    return path


def write_media(path: Path, size_bytes: int = 64) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"m" * max(1, size_bytes))
    return path


def video_probe(duration: float = 120.0, *, width: int = 1920, height: int = 1080, fps: float = 30000 / 1001,
                vcodec: str = "h264", acodec: Optional[str] = "aac", tags: Optional[MediaTags] = None) -> ProbeResult:
    return ProbeResult(
        duration=duration,
        format_name="mov,mp4,m4a,3gp,3g2,mj2",
        video=VideoStream(codec=vcodec, width=width, height=height, fps=fps),
        audio=AudioStream(codec=acodec) if acodec else None,
        tags=tags or MediaTags(),
    )


def audio_probe(duration: float = 200.0, *, codec: str = "mp3", tags: Optional[MediaTags] = None) -> ProbeResult:
    return ProbeResult(duration=duration, format_name="mp3", audio=AudioStream(codec=codec), tags=tags or MediaTags())


class FakeRunner:
    """Stands in for ToolRunner: records argument lists and replays canned results."""

    def __init__(self, *, returncode: int = 0, stdout: str = "", stderr: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.ffmpeg_calls: list[list[str]] = []
        self.ffprobe_calls: list[list[str]] = []

    def _result(self, args) -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(args, self.returncode, self.stdout, self.stderr)

    def ffmpeg(self, args):
        self.ffmpeg_calls.append(list(args))
        return self._result(args)

    def ffprobe(self, args):
        self.ffprobe_calls.append(list(args))
        return self._result(args)

    def ffmpeg_available(self) -> bool:
        return True

    def ffprobe_available(self) -> bool:
        return True


class FakeProber(Prober):
    """
    Probe results by file name. Names containing "broken" fail the way an
    unreadable media file does; anything else unlisted gets a default by extension.
    """

    def __init__(self, results: Optional[dict] = None):
        super().__init__(FakeRunner())
        self.results = dict(results or {})
        self.calls: list[str] = []
        self._mtx = threading.Lock()

    def probe(self, path: Path) -> ProbeResult:
        with self._mtx:
            self.calls.append(path.name)
        if "broken" in path.name:
            raise ProbeError(f"{path.name}: invalid data found when processing input")
        if path.name in self.results:
            return self.results[path.name]
        if path.suffix.lower() in (".mp3", ".ogg", ".wav"):
            return audio_probe()
        return video_probe()


class FakeTranscoder(Transcoder):
    """
    Records every conversion and writes a small stand-in output file.

    `gate` (an Event) holds conversions until set. `fail_names` makes
    conversions of matching source names write a partial file and then fail.
    """

    def __init__(self):
        super().__init__(FakeRunner())
        self.calls: list[tuple] = []
        self.gate: Optional[threading.Event] = None
        self.fail_names: set[str] = set()
        self._mtx = threading.Lock()

    def convert(self, input, video, audio, output, *, metadata=False):
        with self._mtx:
            self.calls.append((input, video, audio, output))
        if self.gate is not None:
            self.gate.wait(timeout=10)
        out = Path(output.file)
        out.parent.mkdir(parents=True, exist_ok=True)
        if Path(input.file).name in self.fail_names:
            out.write_bytes(b"partial")
            raise TranscodeError("conversion failed", stderr="Invalid data found when processing input", returncode=1)
        out.write_bytes(json.dumps({"input": str(input.file), "start": input.start}).encode())

    def outputs(self) -> list[str]:
        return [Path(c[3].file).name for c in self.calls]

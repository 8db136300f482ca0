from __future__ import annotations

import os
import shutil
import subprocess
import time
from typing import Sequence

from .errors import ToolUnavailableError
from .log import log, trim
from .workqueue import WorkQueue


class ToolRunner:
    """
    Launches the external media tools (ffprobe/ffmpeg). Every launch takes a
    slot in the work queue, which is what bounds concurrent subprocesses.

    No timeout is applied: a process is awaited until it exits.
    """

    def __init__(self, queue: WorkQueue, *, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe"):
        self.queue = queue
        self.ffmpeg_cmd = ffmpeg
        self.ffprobe_cmd = ffprobe

    def available(self, tool: str) -> bool:
        try:
            return bool(shutil.which(tool))
        except Exception:
            return False

    def ffmpeg_available(self) -> bool:
        return self.available(self.ffmpeg_cmd)

    def ffprobe_available(self) -> bool:
        return self.available(self.ffprobe_cmd)

    def _exec(self, cmd: list[str]) -> subprocess.CompletedProcess:
        t0 = time.time()
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolUnavailableError(f"cannot launch {cmd[0]}: {e}") from e
        elapsed = time.time() - t0
        tool = os.path.basename(cmd[0])
        log("ffmpeg", f"{tool} exit={proc.returncode} elapsed={elapsed:.3f}s args={' '.join(cmd[1:])}")
        if proc.returncode != 0:
            log("ffmpeg", f"{tool} stderr={trim(proc.stderr)!r}")
        return proc

    def run(self, cmd: Sequence[str]) -> subprocess.CompletedProcess:
        return self.queue.call(self._exec, [str(c) for c in cmd])

    def ffprobe(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        return self.run([self.ffprobe_cmd, "-v", "error", *args])

    def ffmpeg(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        # fatal-only logging: anything that does reach stderr is treated as a failure
        return self.run([self.ffmpeg_cmd, "-hide_banner", "-loglevel", "fatal", "-nostdin", "-y", *args])

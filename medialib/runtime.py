from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import LibraryConfig
from .ff import ToolRunner
from .index import LibraryIndex
from .log import log
from .probe import Prober
from .sidecar import Sidecars
from .store import DerivedAssetStore
from .transcode import Transcoder
from .workqueue import WorkQueue


@dataclass
class Runtime:
    """All long-lived components for one library, wired together."""
    config: LibraryConfig
    queue: WorkQueue
    runner: ToolRunner
    transcoder: Transcoder
    prober: Prober
    sidecars: Sidecars
    store: DerivedAssetStore
    index: LibraryIndex

    @classmethod
    def create(
        cls,
        config: LibraryConfig,
        *,
        runner: Optional[ToolRunner] = None,
        transcoder: Optional[Transcoder] = None,
        prober: Optional[Prober] = None,
    ) -> "Runtime":
        queue = WorkQueue(config.concurrency)
        if runner is None:
            runner = ToolRunner(queue, ffmpeg=config.ffmpeg, ffprobe=config.ffprobe)
        transcoder = transcoder or Transcoder(runner)
        prober = prober or Prober(runner)
        sidecars = Sidecars(config)
        store = DerivedAssetStore(config, sidecars=sidecars, transcoder=transcoder, queue=queue)
        index = LibraryIndex(config, prober=prober, store=store, queue=queue, sidecars=sidecars)
        log("tool", f"runtime ready {config.describe()}")
        return cls(
            config=config,
            queue=queue,
            runner=runner,
            transcoder=transcoder,
            prober=prober,
            sidecars=sidecars,
            store=store,
            index=index,
        )

    def health(self) -> dict:
        return {
            "root": str(self.config.root),
            "ffmpeg": self.runner.ffmpeg_available(),
            "ffprobe": self.runner.ffprobe_available(),
            "queue": self.queue.stats(),
            "store": self.store.stats(),
        }

    def close(self) -> None:
        self.store.close()
        self.queue.shutdown()

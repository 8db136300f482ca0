from __future__ import annotations

import concurrent.futures
import logging
import time
from typing import Callable, Iterable, Iterator, Optional

from .errors import ClientError, ToolUnavailableError, TranscodeError
from .log import log
from .model import Audio, Directory, File, Photo, Video
from .policy import find_suitable_container, montage_times
from .runtime import Runtime
from .store import AssetKind, Params

KINDS = ("thumbnail", "preview", "montage", "convert")

Task = tuple[File, AssetKind, Params]


def plan(runtime: Runtime, kinds: Iterable[str]) -> Iterator[Task]:
    """Every derived asset of the requested kinds that is not yet on disk."""
    kinds = set(kinds)
    unknown = kinds - set(KINDS)
    if unknown:
        raise ValueError(f"unknown kinds: {', '.join(sorted(unknown))}")
    store = runtime.store
    for entry in runtime.index.walk():
        if isinstance(entry, Directory):
            continue
        wanted: list[tuple[AssetKind, Params]] = []
        if "thumbnail" in kinds and isinstance(entry, (Photo, Video)):
            wanted.append((AssetKind.THUMBNAIL, None))
        if isinstance(entry, Video):
            if "preview" in kinds:
                wanted.append((AssetKind.PREVIEW, None))
            if "montage" in kinds:
                wanted.extend((AssetKind.MONTAGE_FRAME, t) for t in montage_times(entry.duration))
            if "convert" in kinds and find_suitable_container(entry.video_codec, entry.audio_codec) is None:
                wanted.append((AssetKind.CONVERSION, "mp4"))
        elif isinstance(entry, Audio):
            if "convert" in kinds and find_suitable_container(None, entry.codec) is None:
                wanted.append((AssetKind.CONVERSION, "mp3"))
        for kind, params in wanted:
            if store.lookup(entry, kind, params) is None:
                yield entry, kind, params


def prebuild(
    runtime: Runtime,
    kinds: Iterable[str] = KINDS,
    *,
    on_progress: Optional[Callable[[int, int, str], None]] = None,
) -> dict:
    """
    Generate missing derived assets for the whole library ahead of time.

    A failed item is logged and counted; the run goes on. Only a missing
    external tool stops it, since every later item would fail the same way.
    """
    t0 = time.time()
    tasks = list(plan(runtime, kinds))
    total = len(tasks)
    done = 0
    failed = 0
    log("tool", f"prebuild start items={total} kinds={','.join(sorted(set(kinds)))}")

    with concurrent.futures.ThreadPoolExecutor(
        max_workers=runtime.queue.concurrency,
        thread_name_prefix="media-prebuild",
    ) as ex:
        futs = {
            ex.submit(runtime.store.get_or_create, f, kind, params): (f, kind, params)
            for f, kind, params in tasks
        }
        try:
            for fut in concurrent.futures.as_completed(futs):
                f, kind, params = futs[fut]
                label = f"{kind.value}{'' if params is None else f'({params})'} {f.rel_path}"
                try:
                    fut.result()
                    done += 1
                except (TranscodeError, ClientError, OSError) as e:
                    failed += 1
                    log("tool", f"failed {label}: {e}", level=logging.ERROR)
                if on_progress is not None:
                    on_progress(done + failed, total, label)
        except ToolUnavailableError:
            for pending in futs:
                pending.cancel()
            raise

    stats = {"total": total, "generated": done, "failed": failed, "elapsed": round(time.time() - t0, 3)}
    log("tool", f"prebuild done {stats}")
    return stats

#!/usr/bin/env python3
"""
CLI to generate derived assets for a whole library without running the server.

Assets covered:
- thumbnail JPG (photos and videos)
- preview MP4 (stitched short snippet)
- montage frames JPG (scrub-bar shots)
- converted MP4/MP3 for media browsers cannot play as-is

Usage:
    python tools/artifacts.py \
        --root /path/to/library \
    [--what all|thumbnail|preview|montage|convert] \
    [--concurrency 4] [--previews-dir DIR] [--include-hidden]

Notes:
- Respects MEDIA_ROOT and the other library env vars; flags override them.
- Assets already on disk are skipped; delete a file's sidecar to rebuild it.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
from pathlib import Path


def import_medialib():
    """
    Make the project root importable when run as `python tools/artifacts.py`,
    where sys.path[0] is this tools directory.
    """
    root = Path(__file__).resolve().parents[1]
    sroot = str(root)
    if sroot not in sys.path:
        sys.path.insert(0, sroot)
    import medialib  # noqa: F401


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Generate derived media assets without running the server")
    ap.add_argument("--root", default=os.environ.get("MEDIA_ROOT", os.getcwd()), help="Library root directory")
    ap.add_argument("--what", default="all", choices=["all", "thumbnail", "preview", "montage", "convert"],
                    help="Which asset kind(s) to generate")
    ap.add_argument("--concurrency", type=int, default=None, help="Max concurrent ffmpeg processes (default: CPU count)")
    ap.add_argument("--previews-dir", default=None, help="Keep sidecar directories under this directory")
    ap.add_argument("--scratch-dir", default=None, help="Directory for temporary preview segments")
    ap.add_argument("--include-hidden", action="store_true", help="Include hidden files and directories")
    ap.add_argument("--quiet", action="store_true", help="Only print errors and the final summary")
    return ap


def main(argv: list[str]) -> int:
    import_medialib()
    from medialib.config import LibraryConfig
    from medialib.errors import FatalIndexingError, ToolUnavailableError
    from medialib.prebuild import KINDS, prebuild
    from medialib.runtime import Runtime

    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO, format="[%(levelname)s] %(message)s")

    root = Path(args.root).expanduser().resolve()
    if not root.is_dir():
        print(f"[cli] Root not found or not a dir: {root}", file=sys.stderr)
        return 2

    config = LibraryConfig.from_env(dict(os.environ, MEDIA_ROOT=str(root)))
    overrides = {}
    if args.concurrency:
        overrides["concurrency"] = max(1, int(args.concurrency))
    if args.previews_dir:
        overrides["previews_dir"] = Path(args.previews_dir).expanduser().resolve()
    if args.scratch_dir:
        overrides["scratch_dir"] = Path(args.scratch_dir).expanduser().resolve()
    if args.include_hidden:
        overrides["include_hidden"] = True
    config = dataclasses.replace(config, **overrides)

    kinds = KINDS if args.what == "all" else (args.what,)
    rt = Runtime.create(config)
    try:
        if not rt.runner.ffmpeg_available() or not rt.runner.ffprobe_available():
            print("[cli] ffmpeg and ffprobe are required on PATH (or set FFMPEG/FFPROBE)", file=sys.stderr)
            return 2

        def progress(done: int, total: int, label: str) -> None:
            if not args.quiet:
                pct = int(done * 100 / total) if total else 100
                print(f"[cli] {done}/{total} ({pct}%) {label}")

        print(f"[cli] Indexing {root}")
        rt.index.build()
        stats = prebuild(rt, kinds, on_progress=progress)
    except (FatalIndexingError, ToolUnavailableError) as e:
        print(f"[cli] ERROR: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n[cli] Cancelled", file=sys.stderr)
        return 130  # 128+SIGINT
    finally:
        rt.close()

    if stats["failed"]:
        print(f"[cli] Completed with {stats['failed']} error(s) of {stats['total']}")
        return 1
    print(f"[cli] Completed successfully ({stats['generated']} generated)")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))

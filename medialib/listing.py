from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Union

from .errors import ClientError, NotFound
from .index import LibraryIndex
from .model import Audio, ConvertedFormat, DirEntry, Directory, EntryType, File, Photo, Video
from .policy import montage_times
from .response import StreamFile
from .store import AssetKind, CaptureParams, DerivedAssetStore, DerivedFile

_DIGITS = re.compile(r"(\d+)")


def natural_key(name: str) -> tuple:
    """Sort key that orders "file2" before "file10"."""
    parts = _DIGITS.split(name.lower())
    return tuple(int(p) if i % 2 else p for i, p in enumerate(parts)), name


def matches(name: str, filter: str) -> bool:
    """Every whitespace-separated term of `filter` occurs in `name`, ignoring case."""
    lowered = name.lower()
    return all(term in lowered for term in filter.lower().split())


def _converted(items: list[ConvertedFormat]) -> list[dict[str, Any]]:
    return [{"format": c.format, "mime": c.mime, "size": c.size} for c in items]


def summarize(entry: DirEntry) -> dict[str, Any]:
    if isinstance(entry, Directory):
        return {
            "type": "dir",
            "name": entry.name,
            "path": entry.rel_path,
            "itemCount": len(entry.entries()),
        }
    if isinstance(entry, Photo):
        return {
            "type": "photo",
            "name": entry.name,
            "path": entry.rel_path,
            "size": entry.size,
            "modifiedMs": entry.modified_ms,
            "mime": entry.mime,
            "width": entry.width,
            "height": entry.height,
            "convertedFormats": _converted(entry.converted),
        }
    if isinstance(entry, Audio):
        return {
            "type": "audio",
            "name": entry.name,
            "path": entry.rel_path,
            "size": entry.size,
            "modifiedMs": entry.modified_ms,
            "mime": entry.mime,
            "duration": entry.duration,
            **entry.tags.to_json(),
            "convertedFormats": _converted(entry.converted),
        }
    if isinstance(entry, Video):
        snippet = entry.preview.snippet
        return {
            "type": "video",
            "name": entry.name,
            "path": entry.rel_path,
            "size": entry.size,
            "modifiedMs": entry.modified_ms,
            "mime": entry.mime,
            "duration": entry.duration,
            "width": entry.width,
            "height": entry.height,
            "fps": entry.fps,
            **entry.tags.to_json(),
            "convertedFormats": _converted(entry.converted),
            "preview": {
                "thumbnail": entry.preview.thumbnail is not None,
                "snippet": {"size": snippet.size} if snippet else None,
                "montageFrames": sorted(entry.preview.montage_frames),
            },
            "montageTimes": montage_times(entry.duration),
        }
    raise TypeError(f"unexpected directory entry: {type(entry).__name__}")


FILE_TYPES = (EntryType.AUDIO.value, EntryType.PHOTO.value, EntryType.VIDEO.value)


def list_files(
    index: LibraryIndex,
    path: Union[str, Sequence[str]],
    filter: Optional[str] = None,
    subdirectories: bool = False,
    types: Optional[Iterable[str]] = None,
    limit: Optional[int] = None,
    exclude_folders: bool = False,
) -> dict[str, Any]:
    """
    Summary of one directory. With `filter`, only matching names are listed;
    with `subdirectories` as well, matching files anywhere below are listed
    (and directories are not).

    `types` keeps only files of those kinds (default: all), `exclude_folders`
    drops directories, and `limit` caps `results` after sorting. The
    approximate totals describe every match, not just the returned page.
    """
    wanted = set(FILE_TYPES) if types is None else {t.lower() for t in types}
    unknown = wanted - set(FILE_TYPES)
    if unknown:
        raise ClientError(400, f"Unknown types: {', '.join(sorted(unknown))}")
    if limit is not None and limit < 0:
        raise ClientError(400, "limit must not be negative")

    d = index.resolve_directory(path)
    if d is None:
        raise NotFound("Directory not found")

    entries: Iterable[DirEntry]
    filter = (filter or "").strip()
    if filter and subdirectories:
        entries = [e for e in index.walk(d) if not isinstance(e, Directory) and matches(e.name, filter)]
    elif filter:
        entries = [e for e in d.entries().values() if matches(e.name, filter)]
    else:
        entries = list(d.entries().values())

    entries = [
        e for e in entries
        if (not exclude_folders if isinstance(e, Directory) else e.type.value in wanted)
    ]
    entries = sorted(entries, key=lambda e: natural_key(e.name))
    files = [e for e in entries if not isinstance(e, Directory)]
    shown = entries if limit is None else entries[:limit]
    return {
        "approximateSize": sum(f.size for f in files),
        "approximateDuration": sum(f.duration for f in files if isinstance(f, (Audio, Video))),
        "approximateCount": len(entries),
        "results": [summarize(e) for e in shown],
    }


def _stream(d: DerivedFile) -> StreamFile:
    return StreamFile(path=d.path, size=d.size, mime=d.mime, name=d.name)


def get_file(
    index: LibraryIndex,
    store: DerivedAssetStore,
    path: str,
    *,
    thumbnail: bool = False,
    preview: bool = False,
    montage_frame: Optional[int] = None,
    capture: Optional[CaptureParams] = None,
    format: Optional[str] = None,
) -> StreamFile:
    """Resolve `path` and pick the source file or one derived asset of it."""
    file: Optional[File] = index.resolve_file(path)
    if file is None:
        raise NotFound("File not found")

    requested = [thumbnail, preview, montage_frame is not None, capture is not None, bool(format)]
    if sum(1 for r in requested if r) > 1:
        raise ClientError(400, "Only one of thumbnail, preview, montageFrame, capture or format may be requested")

    if capture is not None:
        return _stream(store.get_or_create(file, AssetKind.CAPTURE, capture))
    if montage_frame is not None:
        return _stream(store.get_or_create(file, AssetKind.MONTAGE_FRAME, int(montage_frame)))
    if preview:
        return _stream(store.get_or_create(file, AssetKind.PREVIEW))
    if thumbnail:
        return _stream(store.get_or_create(file, AssetKind.THUMBNAIL))
    if format:
        fmt = format.lower().lstrip(".")
        existing = file.converted_format(fmt)
        if existing is not None and existing.path.is_file():
            return StreamFile(path=existing.path, size=existing.size, mime=existing.mime, name=f"{Path(file.name).stem}.{fmt}")
        return _stream(store.get_or_create(file, AssetKind.CONVERSION, fmt))

    try:
        size = file.abs_path.stat().st_size
    except FileNotFoundError:
        raise NotFound("File not found")
    return StreamFile(path=file.abs_path, size=int(size), mime=file.mime, name=file.name)

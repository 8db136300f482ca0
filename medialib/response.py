from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from starlette.responses import StreamingResponse

from .errors import ClientError
from .log import log

CHUNK_SIZE = 1024 * 1024

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9\-_'., ]")


@dataclass(frozen=True)
class StreamFile:
    path: Path
    size: int
    mime: str
    name: Optional[str] = None


def check_range(header: Optional[str]) -> Optional[tuple[Optional[int], Optional[int]]]:
    """
    Syntax check of a Range header before the target's size is known.
    Returns the raw (start, end) bounds, either of which may be open, or None
    when there is no Range header. Malformed or multi-range headers are a 400.
    """
    if header is None or not header.strip():
        return None
    m = _RANGE_RE.match(header)
    if not m:
        raise ClientError(400, "Invalid range")
    start_s, end_s = m.group(1), m.group(2)
    if not start_s and not end_s:
        raise ClientError(400, "Invalid range")
    first = int(start_s) if start_s else None
    last = int(end_s) if end_s else None
    if first is not None and last is not None and first > last:
        raise ClientError(400, "Invalid range")
    return first, last


def parse_range(header: Optional[str], size: int) -> Optional[tuple[int, int]]:
    """
    Inclusive (start, end) for a single `bytes=` range, or None when there is no
    Range header. `bytes=N-` runs to the end and `bytes=-N` is the last N bytes.
    Anything else, including multiple ranges and spans outside the file, is a 400.
    """
    bounds = check_range(header)
    if bounds is None:
        return None
    first, last = bounds
    if first is None:
        if last <= 0 or size <= 0:
            raise ClientError(400, "Invalid range")
        return max(0, size - last), size - 1
    end = min(last, size - 1) if last is not None else size - 1
    if first > end or first >= size:
        raise ClientError(400, "Invalid range")
    return first, end


def sanitize_filename(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", name)


def content_disposition(name: str) -> str:
    return f'inline; filename="{sanitize_filename(name)}"'


def iter_file(path: Path, start: int, end: int, chunk: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield bytes start..end (inclusive) of `path` without reading it all at once."""
    try:
        with open(path, "rb") as f:
            f.seek(start)
            remaining = end - start + 1
            while remaining > 0:
                data = f.read(min(chunk, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data
    except GeneratorExit:
        # client went away mid-stream
        log("range", f"client closed path={path.name} at<={end}", level=logging.DEBUG)
        raise


def stream_response(file: StreamFile, range_header: Optional[str]) -> StreamingResponse:
    span = parse_range(range_header, file.size)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Disposition": content_disposition(file.name or file.path.name),
    }
    if span is None:
        headers["Content-Length"] = str(file.size)
        log("range", f"200 path={file.path.name} size={file.size} ct={file.mime}")
        return StreamingResponse(
            iter_file(file.path, 0, file.size - 1),
            status_code=200,
            headers=headers,
            media_type=file.mime,
        )
    start, end = span
    headers["Content-Length"] = str(end - start + 1)
    headers["Content-Range"] = f"bytes {start}-{end}/{file.size}"
    log("range", f"206 path={file.path.name} {start}-{end}/{file.size} ct={file.mime}")
    return StreamingResponse(
        iter_file(file.path, start, end),
        status_code=206,
        headers=headers,
        media_type=file.mime,
    )

from __future__ import annotations
import os
import sys
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from fastapi import FastAPI, APIRouter, HTTPException, Query, Body, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from medialib import __version__
from medialib.config import LibraryConfig
from medialib.errors import (
    ClientError,
    FatalIndexingError,
    MediaLibError,
    ToolUnavailableError,
    TranscodeError,
)
from medialib.listing import get_file, list_files
from medialib.log import log
from medialib.response import check_range, stream_response
from medialib.runtime import Runtime
from medialib.store import CaptureParams

# Global server state: the wired library runtime lives under "runtime"
STATE: Dict[str, Any] = {}


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code)


def raise_api_error(message: str, status_code: int = 400, data=None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data})


def _runtime() -> Runtime:
    rt = STATE.get("runtime")
    if rt is None:
        raise_api_error("Library not ready", status_code=503)
    return rt


@asynccontextmanager
async def lifespan(app_obj: FastAPI):
    # Startup: a runtime placed in STATE beforehand (tests, embedding) is used as-is
    owned: Optional[Runtime] = None
    if STATE.get("runtime") is None:
        config = LibraryConfig.from_env()
        owned = Runtime.create(config)
        STATE["runtime"] = owned
        log("index", f"MEDIA_ROOT={config.root} eager={int(config.eager_index)}")
        if config.eager_index:
            try:
                await asyncio.to_thread(owned.index.build)
            except (FatalIndexingError, ToolUnavailableError) as e:
                log("index", f"startup indexing failed: {e}", level=logging.CRITICAL)
                STATE.pop("runtime", None)
                owned.close()
                raise
    try:
        yield
    finally:
        if owned is not None:
            STATE.pop("runtime", None)
            owned.close()


app = FastAPI(title="Media Library", version=__version__, lifespan=lifespan)
api = APIRouter(prefix="/api")


def _cors_origins() -> list[str]:
    v = os.environ.get("CORS_ALLOW_ORIGINS")
    if not v or not v.strip():
        return ["*"]
    out = [s.strip() for s in v.split(",") if s.strip()]
    return out or ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Accept-Ranges", "Content-Range", "Content-Length", "Content-Disposition"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        return JSONResponse(exc.detail, status_code=exc.status_code)
    return JSONResponse({"status": "error", "message": str(exc.detail), "data": None}, status_code=exc.status_code)


@app.exception_handler(ClientError)
async def client_error_handler(request: Request, exc: ClientError):
    return api_error(exc.message, status_code=exc.status)


@app.exception_handler(MediaLibError)
async def server_error_handler(request: Request, exc: MediaLibError):
    # Tool output stays in the server log
    if isinstance(exc, TranscodeError):
        log("derive", f"{request.url.path} failed: {exc} code={exc.returncode}", level=logging.ERROR)
    else:
        log("index", f"{request.url.path} failed: {type(exc).__name__}: {exc}", level=logging.ERROR)
    return api_error("Internal server error", status_code=500)


class RescanRequest(BaseModel):
    path: str = Field(default="", description="Library-relative directory; empty for the root")


@api.get("/list")
def list_files_api(
    path: str = Query(default=""),
    filter: Optional[str] = Query(default=None),
    subdirectories: bool = Query(default=False),
    types: Optional[str] = Query(default=None, description="Comma-separated subset of audio,photo,video"),
    limit: Optional[int] = Query(default=None),
    excludeFolders: bool = Query(default=False),
):
    rt = _runtime()
    kinds = [t.strip() for t in types.split(",") if t.strip()] if types else None
    return api_success(list_files(
        rt.index,
        path,
        filter=filter,
        subdirectories=subdirectories,
        types=kinds,
        limit=limit,
        exclude_folders=excludeFolders,
    ))


@api.get("/file")
def get_file_api(
    request: Request,
    path: str = Query(...),
    thumbnail: bool = Query(default=False),
    preview: bool = Query(default=False),
    montageFrame: Optional[int] = Query(default=None),
    start: Optional[float] = Query(default=None),
    end: Optional[float] = Query(default=None),
    type: Optional[str] = Query(default=None),
    silent: bool = Query(default=False),
    format: Optional[str] = Query(default=None),
):
    rt = _runtime()
    range_header = request.headers.get("range")
    # reject a malformed Range before any derived asset is generated
    check_range(range_header)
    capture: Optional[CaptureParams] = None
    if start is not None or end is not None or type is not None:
        capture = CaptureParams(start=start, end=end, type=type or "", silent=silent)  # type: ignore[arg-type]
    sf = get_file(
        rt.index,
        rt.store,
        path,
        thumbnail=thumbnail,
        preview=preview,
        montage_frame=montageFrame,
        capture=capture,
        format=format,
    )
    return stream_response(sf, range_header)


@api.post("/rescan")
def rescan_api(req: Optional[RescanRequest] = Body(default=None)):
    rt = _runtime()
    path = req.path if req is not None else ""
    if not rt.index.invalidate(path):
        raise ClientError(404, "Directory not found")
    return api_success({"path": path, "invalidated": True})


@api.get("/health")
def health_api():
    rt = _runtime()
    return api_success(rt.health())


app.include_router(api)


if __name__ == "__main__":  # pragma: no cover
    try:
        import uvicorn  # type: ignore
    except Exception:  # pragma: no cover
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        sys.exit(1)
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    host = os.environ.get("HOST", "127.0.0.1")
    try:
        port = int(os.environ.get("PORT", "9999"))
    except ValueError:
        port = 9999
    uvicorn.run("app:app", host=host, port=port)

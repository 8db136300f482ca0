import dataclasses

import pytest
from fastapi.testclient import TestClient

import app
from medialib.config import LibraryConfig
from medialib.runtime import Runtime

from .helpers import FakeProber, FakeRunner, FakeTranscoder, write_media, write_photo


@pytest.fixture()
def library(tmp_path):
    """
    A small library:

        movies/a.mp4, movies/b.mkv
        photo.jpg (800x600)
        song.mp3
        notes.txt, .hidden.mp4
    """
    root = tmp_path / "library"
    write_media(root / "movies" / "a.mp4", 1000)
    write_media(root / "movies" / "b.mkv", 500)
    write_photo(root / "photo.jpg")
    write_media(root / "song.mp3", 300)
    write_media(root / "notes.txt", 10)
    write_media(root / ".hidden.mp4", 10)
    return root


@pytest.fixture()
def config(library):
    return LibraryConfig(root=library, concurrency=2)


@pytest.fixture()
def prober():
    return FakeProber()


@pytest.fixture()
def transcoder():
    return FakeTranscoder()


@pytest.fixture()
def make_runtime(prober, transcoder):
    created = []

    def _make(cfg: LibraryConfig, **overrides) -> Runtime:
        if overrides:
            cfg = dataclasses.replace(cfg, **overrides)
        rt = Runtime.create(cfg, runner=FakeRunner(), transcoder=transcoder, prober=prober)
        created.append(rt)
        return rt

    yield _make
    for rt in created:
        rt.close()


@pytest.fixture()
def runtime(make_runtime, config):
    return make_runtime(config)


@pytest.fixture()
def app_module(runtime):
    """The app with its runtime swapped for the faked one."""
    original = app.STATE.get("runtime")
    app.STATE["runtime"] = runtime
    try:
        yield app
    finally:
        if original is None:
            app.STATE.pop("runtime", None)
        else:
            app.STATE["runtime"] = original


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client

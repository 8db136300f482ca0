from fastapi.testclient import TestClient

from .helpers import video_probe, write_media


def test_list_root(client):
    r = client.get("/api/list")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "success"
    data = body["data"]
    assert data["approximateCount"] == 3
    assert [e["name"] for e in data["results"]] == ["movies", "photo.jpg", "song.mp3"]
    assert data["results"][0]["itemCount"] == 2


def test_list_subdirectory_with_filter(client):
    r = client.get("/api/list", params={"path": "/movies/", "filter": "mkv"})
    assert r.status_code == 200
    assert [e["path"] for e in r.json()["data"]["results"]] == ["movies/b.mkv"]


def test_list_missing_directory(client):
    r = client.get("/api/list", params={"path": "nope"})
    assert r.status_code == 404
    assert r.json() == {"status": "error", "message": "Directory not found", "data": None}


def test_full_file_and_ranges(client, library):
    payload = bytes(range(256)) * 4
    (library / "clip.mp4").write_bytes(payload)

    r = client.get("/api/file", params={"path": "clip.mp4"})
    assert r.status_code == 200
    assert r.content == payload
    assert r.headers["accept-ranges"] == "bytes"
    assert r.headers["content-length"] == "1024"
    assert r.headers["content-type"].startswith("video/mp4")
    assert r.headers["content-disposition"] == 'inline; filename="clip.mp4"'

    r = client.get("/api/file", params={"path": "clip.mp4"}, headers={"Range": "bytes=10-19"})
    assert r.status_code == 206
    assert r.content == payload[10:20]
    assert r.headers["content-range"] == "bytes 10-19/1024"
    assert r.headers["content-length"] == "10"

    r = client.get("/api/file", params={"path": "clip.mp4"}, headers={"Range": "bytes=-4"})
    assert r.status_code == 206
    assert r.content == payload[-4:]
    assert r.headers["content-range"] == "bytes 1020-1023/1024"


def test_bad_range_is_400(client):
    r = client.get("/api/file", params={"path": "movies/a.mp4"}, headers={"Range": "bytes=0-1,5-6"})
    assert r.status_code == 400
    assert r.json()["message"] == "Invalid range"
    r = client.get("/api/file", params={"path": "movies/a.mp4"}, headers={"Range": "bytes=5000-"})
    assert r.status_code == 400


def test_missing_file_is_404(client):
    r = client.get("/api/file", params={"path": "movies/none.mp4"})
    assert r.status_code == 404
    assert r.json()["status"] == "error"


def test_photo_thumbnail(client):
    r = client.get("/api/file", params={"path": "photo.jpg", "thumbnail": "true"})
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/jpeg"
    assert r.content[:2] == b"\xff\xd8"
    assert r.headers["content-disposition"] == 'inline; filename="photo.jpg _thumbnail_"'


def test_capture_request(client, transcoder):
    r = client.get("/api/file", params={"path": "movies/a.mp4", "start": 1, "end": 5, "type": "low"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("video/mp4")
    assert r.headers["content-disposition"] == 'inline; filename="a.mp4 _capture 5s, low_"'
    assert [name for name in transcoder.outputs()] == [".incomplete_capture.1-5.low"]


def test_invalid_capture_is_400_without_work(client, transcoder):
    for params in (
        {"start": 10, "end": 5, "type": "low"},
        {"start": 0, "end": 80, "type": "low"},
        {"start": 500, "end": 501, "type": "low"},
        {"start": 1, "end": 2, "type": "8k"},
        {"end": 2, "type": "low"},
    ):
        r = client.get("/api/file", params={"path": "movies/a.mp4", **params})
        assert r.status_code == 400, params
        assert r.json()["status"] == "error"
    r = client.get("/api/file", params={"path": "photo.jpg", "start": 0, "end": 1, "type": "low"})
    assert r.status_code == 400
    assert transcoder.calls == []


def test_combined_requests_are_400(client):
    r = client.get("/api/file", params={"path": "movies/a.mp4", "thumbnail": "true", "preview": "true"})
    assert r.status_code == 400


def test_montage_frame_not_listed_is_404(client):
    r = client.get("/api/file", params={"path": "movies/a.mp4", "montageFrame": 3})
    assert r.status_code == 404
    r = client.get("/api/file", params={"path": "movies/a.mp4", "montageFrame": 2})
    assert r.status_code == 200


def test_transcode_failure_is_generic_500(client, transcoder):
    transcoder.fail_names.add("a.mp4")
    r = client.get("/api/file", params={"path": "movies/a.mp4", "preview": "true"})
    assert r.status_code == 500
    assert r.json() == {"status": "error", "message": "Internal server error", "data": None}
    assert "Invalid data" not in r.text


def test_rescan_picks_up_new_files(client, library):
    assert len(client.get("/api/list", params={"path": "movies"}).json()["data"]["results"]) == 2
    write_media(library / "movies" / "c.mp4")
    r = client.post("/api/rescan", json={"path": "movies"})
    assert r.status_code == 200
    assert r.json()["data"] == {"path": "movies", "invalidated": True}
    assert len(client.get("/api/list", params={"path": "movies"}).json()["data"]["results"]) == 3

    assert client.post("/api/rescan").status_code == 200
    assert client.post("/api/rescan", json={"path": "nope"}).status_code == 404


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["ffmpeg"] is True and data["ffprobe"] is True
    assert data["queue"]["concurrency"] == 2
    assert data["store"] == {"generating": 0}


def test_not_ready_without_runtime(monkeypatch):
    import app

    monkeypatch.setattr(app, "STATE", {})
    r = TestClient(app.app).get("/api/list")
    assert r.status_code == 503
    assert r.json()["message"] == "Library not ready"


def test_mp3_of_silent_video_is_400(client, prober, library):
    write_media(library / "mute.mp4")
    prober.results["mute.mp4"] = video_probe(30.0, acodec=None)
    r = client.get("/api/file", params={"path": "mute.mp4", "format": "mp3"})
    assert r.status_code == 400
    assert r.json() == {"status": "error", "message": "mp3 conversion needs an audio stream", "data": None}


def test_malformed_range_is_rejected_before_generating(client, transcoder):
    r = client.get(
        "/api/file",
        params={"path": "movies/a.mp4", "start": 1, "end": 5, "type": "low"},
        headers={"Range": "bytes=0-1,3-4"},
    )
    assert r.status_code == 400
    assert r.json()["message"] == "Invalid range"
    assert transcoder.calls == []


def test_list_types_limit_and_folders(client):
    r = client.get("/api/list", params={"types": "audio,photo", "excludeFolders": "true"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert [e["name"] for e in data["results"]] == ["photo.jpg", "song.mp3"]
    assert all(isinstance(e["modifiedMs"], int) for e in data["results"])

    r = client.get("/api/list", params={"limit": 1})
    data = r.json()["data"]
    assert [e["name"] for e in data["results"]] == ["movies"]
    assert data["approximateCount"] == 3

    assert client.get("/api/list", params={"types": "video,text"}).status_code == 400
    assert client.get("/api/list", params={"limit": -1}).status_code == 400

import json
import os

import pytest

from medialib.errors import ProbeError
from medialib.probe import Prober, parse_frame_rate, parse_probe_output, parse_track, sniff_mime
from medialib.sidecar import write_json_atomic

from .helpers import FakeRunner, write_media


def _payload(**fmt_overrides):
    fmt = {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "duration": "12.5", "tags": {"TITLE": "Clip", "Artist": "Someone"}}
    fmt.update(fmt_overrides)
    return {
        "format": fmt,
        "streams": [
            {"codec_type": "video", "codec_name": "mjpeg", "width": 300, "height": 300,
             "r_frame_rate": "90000/1", "disposition": {"attached_pic": 1}},
            {"codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720,
             "r_frame_rate": "30000/1001", "tags": {"title": "stream title", "track": "3/12"}},
            {"codec_type": "audio", "codec_name": "aac"},
        ],
    }


def test_frame_rate_is_not_truncated():
    assert parse_frame_rate("30000/1001") == pytest.approx(29.97, abs=0.001)
    assert parse_frame_rate("25") == 25.0
    assert parse_frame_rate("0/0") is None
    assert parse_frame_rate("n/a") is None


def test_track_accepts_total_suffix():
    assert parse_track("3/12") == 3
    assert parse_track("7") == 7
    assert parse_track("side A") is None


def test_parse_skips_cover_art_and_merges_tags():
    r = parse_probe_output(_payload(), "clip.mp4")
    assert r.duration == 12.5
    assert r.video.codec == "h264"
    assert (r.video.width, r.video.height) == (1280, 720)
    assert r.video.fps == pytest.approx(29.97, abs=0.001)
    assert r.audio.codec == "aac"
    # container tags win over stream tags
    assert r.tags.title == "Clip"
    assert r.tags.artist == "Someone"
    assert r.tags.track == 3


@pytest.mark.parametrize("duration", [None, "N/A", "-1", "inf"])
def test_parse_rejects_bad_duration(duration):
    with pytest.raises(ProbeError):
        parse_probe_output(_payload(duration=duration), "clip.mp4")


def test_parse_rejects_negative_dimensions():
    payload = _payload()
    payload["streams"][1]["width"] = -4
    with pytest.raises(ProbeError):
        parse_probe_output(payload, "clip.mp4")


def test_mime_from_container_with_extension_fallback(tmp_path):
    assert sniff_mime(tmp_path / "a.mp4", "mov,mp4,m4a,3gp,3g2,mj2", is_video=True) == "video/mp4"
    assert sniff_mime(tmp_path / "a.mkv", "matroska,webm", is_video=True) == "video/x-matroska"
    assert sniff_mime(tmp_path / "a.mp3", "mp3", is_video=False) == "audio/mpeg"
    assert sniff_mime(tmp_path / "a.mp3", "", is_video=False) == "audio/mpeg"


def test_probe_invokes_tool_and_parses(tmp_path):
    src = write_media(tmp_path / "clip.mp4")
    runner = FakeRunner(stdout=json.dumps(_payload()))
    r = Prober(runner).probe(src)
    assert r.duration == 12.5
    assert runner.ffprobe_calls[0][-1] == str(src)
    assert "-show_streams" in runner.ffprobe_calls[0]


def test_probe_failure_is_soft(tmp_path):
    src = write_media(tmp_path / "clip.mp4")
    with pytest.raises(ProbeError):
        Prober(FakeRunner(returncode=1, stderr="moov atom not found")).probe(src)
    with pytest.raises(ProbeError):
        Prober(FakeRunner(stdout="not json")).probe(src)


def test_probe_cache_reused_until_source_changes(tmp_path):
    src = write_media(tmp_path / "clip.mp4", 100)
    cache = tmp_path / ".medialib" / "clip" / "probe.json"
    runner = FakeRunner(stdout=json.dumps(_payload()))
    prober = Prober(runner)

    first = prober.probe_cached(src, cache)
    second = prober.probe_cached(src, cache)
    assert first == second
    assert len(runner.ffprobe_calls) == 1
    assert json.loads(cache.read_text())["source"]["size"] == 100

    src.write_bytes(b"x" * 200)
    st = src.stat()
    os.utime(src, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
    prober.probe_cached(src, cache)
    assert len(runner.ffprobe_calls) == 2


def test_probe_cache_unreadable_is_replaced(tmp_path):
    src = write_media(tmp_path / "clip.mp4")
    cache = tmp_path / "probe.json"
    cache.write_text("{truncated")
    runner = FakeRunner(stdout=json.dumps(_payload()))
    Prober(runner).probe_cached(src, cache)
    assert len(runner.ffprobe_calls) == 1
    assert "result" in json.loads(cache.read_text())


def test_result_survives_unwritable_cache(tmp_path):
    src = write_media(tmp_path / "clip.mp4")
    blocker = tmp_path / "sidecar"
    blocker.write_text("not a directory")
    runner = FakeRunner(stdout=json.dumps(_payload()))
    r = Prober(runner).probe_cached(src, blocker / "probe.json")
    assert r.duration == 12.5
    assert len(runner.ffprobe_calls) == 1


def test_cache_writes_leave_no_temporary_files(tmp_path):
    cache = tmp_path / "side" / "probe.json"
    write_json_atomic(cache, {"a": 1})
    write_json_atomic(cache, {"a": 2})
    assert json.loads(cache.read_text()) == {"a": 2}
    assert [p.name for p in cache.parent.iterdir()] == ["probe.json"]

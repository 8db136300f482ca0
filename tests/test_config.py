from pathlib import Path

from medialib.config import DEFAULT_PHOTO_EXTENSIONS, LibraryConfig, parse_extensions


def test_parse_extensions_normalizes():
    assert parse_extensions("mp4,.MKV, webm", frozenset()) == {"mp4", "mkv", "webm"}
    assert parse_extensions("", DEFAULT_PHOTO_EXTENSIONS) is DEFAULT_PHOTO_EXTENSIONS
    assert parse_extensions(" , ", DEFAULT_PHOTO_EXTENSIONS) is DEFAULT_PHOTO_EXTENSIONS


def test_from_env(tmp_path):
    cfg = LibraryConfig.from_env({
        "MEDIA_ROOT": str(tmp_path),
        "VIDEO_EXTS": "mp4,.MOV",
        "INCLUDE_HIDDEN": "yes",
        "PREVIEWS_DIR": str(tmp_path / "previews"),
        "WORK_CONCURRENCY": "0",
        "FFMPEG": "/opt/ff/ffmpeg",
    })
    assert cfg.root == tmp_path.resolve()
    assert cfg.video_extensions == {"mp4", "mov"}
    assert cfg.include_hidden is True
    assert cfg.previews_dir == (tmp_path / "previews").resolve()
    assert cfg.scratch_dir is None
    assert cfg.concurrency == 1
    assert cfg.ffmpeg == "/opt/ff/ffmpeg"
    assert cfg.ffprobe == "ffprobe"


def test_from_env_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = LibraryConfig.from_env({"WORK_CONCURRENCY": "lots"})
    assert cfg.root == Path(tmp_path).resolve()
    assert cfg.include_hidden is False
    assert cfg.eager_index is True
    assert cfg.concurrency >= 1
    assert "mp3" in cfg.audio_extensions
    assert cfg.describe()["previews_dir"] is None

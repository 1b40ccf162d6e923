from __future__ import annotations

from pathlib import Path

import pytest

from engine import extraction
from engine.errors import NoOutputProduced, PlatformAuthRequired, ProcessAbnormalExit
from engine.extraction import (
    ExtractionRequest,
    build_extraction_argv,
    classify_extraction_failure,
    resolve_cookie_args,
    run_extraction,
)
from engine.platforms import get_platform_strategy
from engine.process import ProcessResult
from engine.quality import get_quality_spec
from engine.sessions import SessionState


def _argv(url="https://www.youtube.com/watch?v=abc", tier="high", platform="youtube", **kwargs):
    return build_extraction_argv(
        url,
        get_quality_spec(tier),
        get_platform_strategy(platform),
        "/tmp/session/%(title)s_%(id)s_%(playlist_index)s.%(ext)s",
        ytdlp_bin="yt-dlp",
        **kwargs,
    )


def test_video_argv_layout() -> None:
    argv = _argv()

    assert argv[0] == "yt-dlp"
    assert argv[1:3] == ["-f", get_quality_spec("high").format_selector]
    assert argv[argv.index("--merge-output-format") + 1] == "mp4"
    assert argv[argv.index("-o") + 1].endswith("%(title)s_%(id)s_%(playlist_index)s.%(ext)s")
    for flag in ("--restrict-filenames", "--embed-metadata", "--newline", "--no-playlist"):
        assert flag in argv
    assert argv.count("--write-thumbnail") == 1
    assert "--embed-thumbnail" in argv
    assert argv[-1] == "https://www.youtube.com/watch?v=abc"


def test_audio_argv_skips_merge_and_thumbnails() -> None:
    argv = _argv(tier="audio")

    assert "--merge-output-format" not in argv
    assert "--embed-thumbnail" not in argv
    assert argv[argv.index("-f") + 1].startswith("bestaudio")


def test_cookie_file_wins_over_browser_cookies() -> None:
    argv = _argv(cookies_file="/c/yt.txt", cookies_from_browser="chrome")

    assert argv[argv.index("--cookies") + 1] == "/c/yt.txt"
    assert "--cookies-from-browser" not in argv
    assert argv[-1].startswith("https://")


def test_resolve_cookie_args_uses_configured_file(monkeypatch, tmp_path) -> None:
    cookie_file = tmp_path / "ig.txt"
    cookie_file.write_text("# Netscape HTTP Cookie File\n")
    monkeypatch.setattr(extraction.settings, "INSTAGRAM_COOKIES_FILE", str(cookie_file))

    assert resolve_cookie_args(get_platform_strategy("instagram")) == (str(cookie_file), None)


def test_resolve_cookie_args_ignores_browser_in_production(monkeypatch) -> None:
    monkeypatch.setattr(extraction.settings, "YOUTUBE_COOKIES_FILE", None)
    monkeypatch.setattr(extraction.settings, "COOKIES_FROM_BROWSER", "chrome")

    monkeypatch.setenv("MEDIARELAY_ENV", "production")
    assert resolve_cookie_args(get_platform_strategy("youtube")) == (None, None)

    monkeypatch.setenv("MEDIARELAY_ENV", "development")
    assert resolve_cookie_args(get_platform_strategy("youtube")) == (None, "chrome")
    # Platforms without a login gate never get cookies.
    assert resolve_cookie_args(get_platform_strategy("vimeo")) == (None, None)


def test_auth_failure_becomes_platform_auth_required(monkeypatch) -> None:
    monkeypatch.setenv("MEDIARELAY_ENV", "production")

    error = classify_extraction_failure("instagram", 1, "ERROR: login required for this content")

    assert isinstance(error, PlatformAuthRequired)
    payload = error.to_payload()
    assert payload["error_kind"] == "PlatformAuthRequired"
    assert payload["platform"] == "instagram"
    assert payload["is_production"] is True
    assert payload["auth_supported"] is False
    assert "platform_guidance" in payload


def test_other_failures_become_abnormal_exit() -> None:
    error = classify_extraction_failure("vimeo", 1, "ERROR: Unsupported URL")

    assert isinstance(error, ProcessAbnormalExit)
    assert error.returncode == 1
    assert "Unsupported URL" in error.details


def _fake_runner(produce, returncode=0, stderr=""):
    def _run(registry, session, argv, **kwargs):
        for name in produce:
            (Path(session.temp_dir) / name).write_bytes(b"data")
        return ProcessResult(returncode=returncode, stdout="", stderr=stderr, elapsed=0.01)

    return _run


def test_run_extraction_returns_media_files_without_sidecars(monkeypatch, registry) -> None:
    monkeypatch.setattr(
        "engine.extraction.run_tracked",
        _fake_runner(["Clip_abc_NA.mp4", "Clip_abc_NA.info.json", "Clip_abc_NA.thumbnail.jpg"]),
    )
    session = registry.register("https://youtu.be/abc")

    result = run_extraction(registry, session, ExtractionRequest(url="https://youtu.be/abc"))

    assert result.platform == "youtube"
    assert [f.name for f in result.files] == ["Clip_abc_NA.mp4"]
    assert session.state == SessionState.COMPLETED
    session.cleanup()


def test_run_extraction_without_output_raises(monkeypatch, registry) -> None:
    monkeypatch.setattr("engine.extraction.run_tracked", _fake_runner(["Clip.info.json"]))
    session = registry.register("https://youtu.be/abc")

    with pytest.raises(NoOutputProduced):
        run_extraction(registry, session, ExtractionRequest(url="https://youtu.be/abc"))

    assert session.state == SessionState.FAILED
    session.cleanup()


def test_run_extraction_classifies_nonzero_exit(monkeypatch, registry) -> None:
    monkeypatch.setenv("MEDIARELAY_ENV", "development")
    monkeypatch.setattr(
        "engine.extraction.run_tracked",
        _fake_runner([], returncode=1, stderr="ERROR: Sign in to confirm you're not a bot"),
    )
    session = registry.register("https://youtu.be/abc")

    with pytest.raises(PlatformAuthRequired) as excinfo:
        run_extraction(registry, session, ExtractionRequest(url="https://youtu.be/abc"))

    assert excinfo.value.auth_supported is True
    assert session.state == SessionState.FAILED
    session.cleanup()

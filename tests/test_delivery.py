from __future__ import annotations

import asyncio
import io
import zipfile

import pytest

pytest.importorskip("fastapi")

from api.delivery import _iter_file, iter_session_stream, stream_archive, stream_single_file
from media.packaging import archive_entries, iter_zip_archive

_SCOPE = {
    "type": "http",
    "asgi": {"version": "3.0", "spec_version": "2.4"},
    "http_version": "1.1",
    "method": "POST",
    "path": "/api/download-video",
    "headers": [],
}


def _single(session):
    path = session.temp_dir / "clip.mp4"
    path.write_bytes(b"0123456789" * 20)
    return stream_single_file(session, path, "clip.mp4", chunk_size=8)


def _archive(session):
    files = []
    for name in ("a.mp4", "b.jpg"):
        path = session.temp_dir / name
        path.write_bytes(name.encode("utf-8") * 400)
        files.append(path)
    return stream_archive(session, files, "carousel.zip", chunk_size=64)


def _drive(response, *, fail_after=None):
    """Run the ASGI response; ``send`` raises once ``fail_after`` messages went out."""
    sent = []

    async def receive():
        await asyncio.Event().wait()

    async def send(message):
        if fail_after is not None and len(sent) >= fail_after:
            raise OSError("client went away")
        sent.append(message)

    async def _run():
        try:
            await response(dict(_SCOPE), receive, send)
        except Exception as exc:
            return exc
        return None

    return asyncio.run(_run()), sent


def _body(sent):
    return b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")


def _assert_released(registry, session):
    assert session.cleaned is True
    assert not session.temp_dir.exists()
    assert registry.get(session.key) is None


@pytest.mark.parametrize("build", [_single, _archive], ids=["single", "archive"])
def test_send_failing_on_response_start_still_cleans_up(registry, build) -> None:
    session = registry.register("https://youtu.be/abc")
    response = build(session)

    error, sent = _drive(response, fail_after=0)

    assert error is not None
    assert sent == []
    _assert_released(registry, session)
    # The key is free again instead of conflicting forever.
    registry.register("https://youtu.be/abc").cleanup()


@pytest.mark.parametrize("build", [_single, _archive], ids=["single", "archive"])
def test_disconnect_after_first_chunk_cleans_up(registry, build) -> None:
    session = registry.register("https://instagram.com/p/x")
    response = build(session)

    error, sent = _drive(response, fail_after=2)

    assert error is not None
    assert [m["type"] for m in sent] == ["http.response.start", "http.response.body"]
    _assert_released(registry, session)


def test_completed_single_stream_sends_whole_file_and_cleans_up_once(registry) -> None:
    session = registry.register("k")
    response = _single(session)

    error, sent = _drive(response)

    assert error is None
    assert _body(sent) == b"0123456789" * 20
    headers = dict(sent[0]["headers"])
    assert headers[b"content-length"] == b"200"
    _assert_released(registry, session)
    assert session.cleanup() is False


def test_completed_archive_stream_is_a_valid_zip(registry) -> None:
    session = registry.register("k")
    response = _archive(session)

    error, sent = _drive(response)

    assert error is None
    with zipfile.ZipFile(io.BytesIO(_body(sent))) as archive:
        assert archive.namelist() == ["carousel_item_1_a.mp4", "carousel_item_2_b.jpg"]
    _assert_released(registry, session)


def test_closing_partly_read_file_stream_cleans_up(registry) -> None:
    session = registry.register("k")
    path = session.temp_dir / "clip.mp4"
    path.write_bytes(b"x" * 64)
    stream = iter_session_stream(session, _iter_file(path, 4), "download")

    assert next(stream) == b"xxxx"
    assert session.cleaned is False
    stream.close()

    _assert_released(registry, session)


def test_closing_partly_read_archive_stream_aborts_and_cleans_up(registry) -> None:
    session = registry.register("k")
    files = []
    for name in ("a.mp4", "b.mp4"):
        path = session.temp_dir / name
        path.write_bytes(name.encode("utf-8") * 1000)
        files.append(path)
    stream = iter_session_stream(session, iter_zip_archive(archive_entries(files), 16), "archive")

    assert next(stream)
    stream.close()

    _assert_released(registry, session)

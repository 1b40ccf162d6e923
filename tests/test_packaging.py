from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest

from engine.errors import NoOutputProduced
from media.packaging import (
    PackagingMode,
    archive_entries,
    archive_filename,
    decide_packaging,
    download_filename,
    filter_media_files,
    iter_zip_archive,
    order_files,
)


def _touch(directory: Path, *names: str) -> list[Path]:
    paths = []
    for name in names:
        path = directory / name
        path.write_bytes(name.encode("utf-8") * 10)
        paths.append(path)
    return paths


def test_sidecars_are_filtered(tmp_path) -> None:
    files = _touch(
        tmp_path,
        "a.mp4",
        "a.info.json",
        "a.description",
        "a.annotations.xml",
        "a_thumbnail.jpg",
        "a.mp4.part",
        "a.mp4.ytdl",
        "yt.log",
    )

    assert [p.name for p in filter_media_files(files)] == ["a.mp4"]


def test_order_puts_videos_first_then_lexical() -> None:
    ordered = order_files([Path("b.jpg"), Path("z.mp4"), Path("a.jpg"), Path("c.webm")])

    assert [p.name for p in ordered] == ["c.webm", "z.mp4", "a.jpg", "b.jpg"]


def test_multi_file_platform_gets_archive(tmp_path) -> None:
    files = _touch(tmp_path, "2.jpg", "1.mp4", "1.info.json")

    decision = decide_packaging(files, allows_multi_file=True)

    assert decision.mode == PackagingMode.ARCHIVE
    assert [p.name for p in decision.ordered_files] == ["1.mp4", "2.jpg"]


def test_single_file_platform_streams_first_video(tmp_path) -> None:
    files = _touch(tmp_path, "cover.jpg", "clip.mkv")

    decision = decide_packaging(files, allows_multi_file=False)

    assert decision.mode == PackagingMode.SINGLE_STREAM
    assert decision.primary.name == "clip.mkv"


def test_one_file_on_multi_file_platform_is_streamed(tmp_path) -> None:
    decision = decide_packaging(_touch(tmp_path, "only.mp4"), allows_multi_file=True)

    assert decision.mode == PackagingMode.SINGLE_STREAM


def test_nothing_but_sidecars_is_no_output(tmp_path) -> None:
    with pytest.raises(NoOutputProduced):
        decide_packaging(_touch(tmp_path, "x.info.json"), allows_multi_file=True)


def test_filenames() -> None:
    produced = Path("/t/Clip_abc_NA.mp4")

    assert download_filename(None, produced) == "Clip_abc_NA.mp4"
    assert download_filename("holiday", produced) == "holiday.mp4"
    assert download_filename("holiday.mkv", produced) == "holiday.mkv"
    assert archive_filename(None, "instagram") == "instagram_carousel.zip"
    assert archive_filename("trip.zip", "instagram") == "trip.zip"


def test_streamed_archive_contains_ordered_entries(tmp_path) -> None:
    files = order_files(_touch(tmp_path, "b.jpg", "a.mp4"))

    blob = b"".join(iter_zip_archive(archive_entries(files), chunk_size=7))

    with zipfile.ZipFile(io.BytesIO(blob)) as archive:
        assert archive.testzip() is None
        assert archive.namelist() == ["carousel_item_1_a.mp4", "carousel_item_2_b.jpg"]
        assert archive.read("carousel_item_1_a.mp4") == (tmp_path / "a.mp4").read_bytes()
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in archive.infolist())
